# Copyright (C) 2016 The OpenTimestamps developers
#
# This file is part of the OpenTimestamps Proof Engine.
#
# It is subject to the license terms in the LICENSE file found in the top-level
# directory of this distribution.
#
# No part of the OpenTimestamps Proof Engine, including this file, may be
# copied, modified, propagated, or distributed except according to the terms
# contained in the LICENSE file.

import http.server
import os
import threading
import time
import unittest
import unittest.mock

from proofengine.calendar import *
from proofengine.core.notary import *
from proofengine.core.op import *
from proofengine.core.serialize import *
from proofengine.core.timestamp import *
from proofengine.tests.fakes import FakeCalendar, HangingCalendar

class Test_UrlWhitelist(unittest.TestCase):
    def test_empty(self):
        """Empty whitelist"""
        wl = UrlWhitelist()

        self.assertNotIn('', wl)
        self.assertNotIn('http://example.com', wl)

    def test_exact_match(self):
        """Exact match"""
        wl = UrlWhitelist(("https://example.com",))
        self.assertIn("https://example.com", wl)
        self.assertNotIn("http://example.com", wl)
        self.assertNotIn("http://example.org", wl)

    def test_add_scheme(self):
        """URL scheme added automatically"""
        wl = UrlWhitelist(("example.com",))
        self.assertIn("https://example.com", wl)
        self.assertIn("http://example.com", wl)

    def test_glob_match(self):
        """Glob matching"""
        wl = UrlWhitelist(("*.example.com",))
        self.assertIn("https://foo.example.com", wl)
        self.assertIn("http://bar.example.com", wl)
        self.assertIn("http://foo.bar.example.com", wl)

        self.assertNotIn("http://barexample.com", wl)

    def test_queries_rejected(self):
        """URLs with queries never match"""
        with self.assertRaises(ValueError):
            UrlWhitelist(("https://example.com/?foo=bar",))

        wl = UrlWhitelist(("https://example.com",))
        self.assertNotIn("https://example.com?foo=bar", wl)

class Test_scatter_gather(unittest.TestCase):
    def test_outcomes(self):
        """Results and exceptions are both collected"""
        def fail():
            raise ValueError('nope')

        outcomes = dict(scatter_gather([('a', lambda: 1), ('b', fail)], timeout=5))
        self.assertEqual(outcomes['a'], 1)
        self.assertIsInstance(outcomes['b'], ValueError)

    def test_timeout(self):
        """Jobs still running at the deadline are left out"""
        release = threading.Event()
        self.addCleanup(release.set)

        start = time.monotonic()
        outcomes = scatter_gather([('fast', lambda: 1), ('slow', lambda: release.wait(5))], timeout=0.2)
        self.assertLess(time.monotonic() - start, 4)
        self.assertEqual(outcomes, [('fast', 1)])

    def test_cancel(self):
        """Setting the cancel event stops waiting"""
        release = threading.Event()
        self.addCleanup(release.set)

        cancel = threading.Event()
        threading.Timer(0.2, cancel.set).start()

        start = time.monotonic()
        outcomes = scatter_gather([('slow', lambda: release.wait(5))], timeout=10, cancel=cancel)
        self.assertLess(time.monotonic() - start, 4)
        self.assertEqual(outcomes, [])

    def test_cancel_keeps_finished(self):
        """Jobs that finished before the cancel was noticed are kept"""
        release = threading.Event()
        self.addCleanup(release.set)

        class SlowCancel:
            # Already cancelled, but only noticed after the fast job is done
            def is_set(self):
                time.sleep(0.2)
                return True

        outcomes = scatter_gather([('fast', lambda: 1), ('slow', lambda: release.wait(5))],
                                  timeout=10, cancel=SlowCancel())
        self.assertEqual(outcomes, [('fast', 1)])

class Test_submit_to_calendars(unittest.TestCase):
    DIGEST = OpSHA256()(b'hello')

    def test_partial_failure(self):
        """Calendars that fail or time out are dropped"""
        calendars = {'https://a.example.com': FakeCalendar('https://a.example.com', nonce=b'\x01'),
                     'https://b.example.com': FakeCalendar('https://b.example.com', nonce=b'\x02'),
                     'https://c.example.com': HangingCalendar('https://c.example.com')}
        self.addCleanup(calendars['https://c.example.com'].release.set)

        submissions = submit_to_calendars(self.DIGEST, sorted(calendars), timeout=0.5,
                                          remote_calendar=lambda url: calendars[url])

        self.assertEqual(sorted(s.calendar_url for s in submissions),
                         ['https://a.example.com', 'https://b.example.com'])
        for s in submissions:
            self.assertEqual(s.timestamp.msg, self.DIGEST)

        # Every calendar was asked
        for calendar in calendars.values():
            self.assertEqual(calendar.submitted, [self.DIGEST])

    def test_all_fail(self):
        """No calendar responding"""
        calendars = {'https://a.example.com': FakeCalendar('https://a.example.com', error=TimeoutError('timed out')),
                     'https://b.example.com': FakeCalendar('https://b.example.com', error=OSError('unreachable'))}

        with self.assertRaises(AllServersUnreachableError):
            submit_to_calendars(self.DIGEST, sorted(calendars), timeout=1,
                                remote_calendar=lambda url: calendars[url])

    def test_m_of_n(self):
        """Fewer than m calendars responding"""
        calendars = {'https://a.example.com': FakeCalendar('https://a.example.com'),
                     'https://b.example.com': FakeCalendar('https://b.example.com', error=OSError('unreachable'))}

        with self.assertRaises(InsufficientCalendarsError):
            submit_to_calendars(self.DIGEST, sorted(calendars), timeout=1, m=2,
                                remote_calendar=lambda url: calendars[url])

        submissions = submit_to_calendars(self.DIGEST, sorted(calendars), timeout=1, m=1,
                                          remote_calendar=lambda url: calendars[url])
        self.assertEqual(len(submissions), 1)

    def test_wrong_digest(self):
        """Fragments for some other digest are dropped"""
        class WrongDigestCalendar(FakeCalendar):
            def submit(self, digest, timeout=None):
                return super().submit(b'\x00' * 32, timeout=timeout)

        calendars = {'https://a.example.com': WrongDigestCalendar('https://a.example.com'),
                     'https://b.example.com': FakeCalendar('https://b.example.com')}

        submissions = submit_to_calendars(self.DIGEST, sorted(calendars), timeout=1,
                                          remote_calendar=lambda url: calendars[url])
        self.assertEqual([s.calendar_url for s in submissions], ['https://b.example.com'])

    def test_no_calendars(self):
        with self.assertRaises(ValueError):
            submit_to_calendars(self.DIGEST, [], timeout=1)

class Test_poll_calendars(unittest.TestCase):
    def test_outcomes(self):
        """Fragments, not-yet, and errors"""
        commitment = b'commitment'
        fragment = Timestamp(commitment)
        fragment.ops.add(OpSHA256()).attestations.add(BitcoinBlockHeaderAttestation(1))

        done = FakeCalendar('https://done.example.com')
        done.upgrades[commitment] = fragment
        waiting = FakeCalendar('https://waiting.example.com')
        broken = FakeCalendar('https://broken.example.com', error=OSError('unreachable'))
        calendars = {c.url: c for c in (done, waiting, broken)}

        results = poll_calendars([(c.url, c.url, commitment) for c in (done, waiting, broken)],
                                 timeout=1, remote_calendar=lambda url: calendars[url])

        self.assertEqual(results[done.url], fragment)
        self.assertIsNone(results[waiting.url])
        self.assertIsInstance(results[broken.url], CalendarServerError)

    def test_wrong_commitment(self):
        """Fragments for some other commitment are malformed"""
        calendar = FakeCalendar('https://a.example.com')
        calendar.upgrades[b'commitment'] = Timestamp(b'something else')

        results = poll_calendars([('a', calendar.url, b'commitment')], timeout=1,
                                 remote_calendar=lambda url: calendar)
        self.assertIsInstance(results['a'], MalformedResponseError)

    def test_timeout(self):
        """Calendars that don't answer in time"""
        calendar = HangingCalendar('https://a.example.com')
        self.addCleanup(calendar.release.set)

        results = poll_calendars([('a', calendar.url, b'commitment')], timeout=0.2,
                                 remote_calendar=lambda url: calendar)
        self.assertIsInstance(results['a'], CalendarServerError)


class CalendarRequestHandler(http.server.BaseHTTPRequestHandler):
    def do_POST(self):
        digest = self.rfile.read(int(self.headers['Content-Length']))
        self.server.request_headers.append(self.headers)

        stamp = Timestamp(digest)
        stamp.ops.add(OpAppend(b'\x01')).attestations.add(PendingAttestation('http://127.0.0.1'))
        ctx = BytesSerializationContext()
        stamp.serialize(ctx)
        self.reply(200, ctx.getbytes())

    def do_GET(self):
        self.server.request_headers.append(self.headers)
        code, body = self.server.responses.get(self.path, (404, b'Commitment not found'))
        self.reply(code, body)

    def reply(self, code, body):
        self.send_response(code)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass

class Test_RemoteCalendar(unittest.TestCase):
    def setUp(self):
        self.server = http.server.HTTPServer(('127.0.0.1', 0), CalendarRequestHandler)
        self.server.responses = {}
        self.server.request_headers = []
        thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        thread.start()
        self.addCleanup(self.server.server_close)
        self.addCleanup(self.server.shutdown)

        env_patch = unittest.mock.patch.dict(os.environ, {'no_proxy': '*', 'NO_PROXY': '*'})
        env_patch.start()
        self.addCleanup(env_patch.stop)

        self.calendar = RemoteCalendar('http://127.0.0.1:%d/' % self.server.server_address[1])

    def test_submit(self):
        """Submitting a digest"""
        digest = OpSHA256()(b'hello')
        stamp = self.calendar.submit(digest, timeout=5)

        self.assertEqual(stamp.msg, digest)
        self.assertEqual(stamp.ops[OpAppend(b'\x01')].attestations, {PendingAttestation('http://127.0.0.1')})

        headers = self.server.request_headers[0]
        self.assertEqual(headers['Accept'], 'application/vnd.opentimestamps.v1')
        self.assertTrue(headers['User-Agent'].startswith('OpenTimestamps-ProofEngine/'))

    def test_get_timestamp(self):
        """Getting an upgraded timestamp"""
        commitment = b'\x01\x02\x03\x04'
        fragment = Timestamp(commitment)
        fragment.ops.add(OpSHA256()).attestations.add(BitcoinBlockHeaderAttestation(1))
        ctx = BytesSerializationContext()
        fragment.serialize(ctx)
        self.server.responses['/timestamp/01020304'] = (200, ctx.getbytes())

        self.assertEqual(self.calendar.get_timestamp(commitment, timeout=5), fragment)

    def test_not_found(self):
        """404 means the calendar doesn't have anything yet"""
        with self.assertRaises(CommitmentNotFoundError) as cm:
            self.calendar.get_timestamp(b'\x01\x02\x03\x04', timeout=5)
        self.assertEqual(cm.exception.reason, 'Commitment not found')

    def test_server_error(self):
        self.server.responses['/timestamp/01020304'] = (500, b'oops')
        with self.assertRaises(CalendarServerError):
            self.calendar.get_timestamp(b'\x01\x02\x03\x04', timeout=5)

    def test_malformed(self):
        """Garbage and oversized responses"""
        self.server.responses['/timestamp/01020304'] = (200, b'\x42')
        with self.assertRaises(MalformedResponseError):
            self.calendar.get_timestamp(b'\x01\x02\x03\x04', timeout=5)

        self.server.responses['/timestamp/01020304'] = (200, b'\x00' * (RemoteCalendar.MAX_RESPONSE_SIZE + 1))
        with self.assertRaises(MalformedResponseError):
            self.calendar.get_timestamp(b'\x01\x02\x03\x04', timeout=5)

    def test_unreachable(self):
        """Connection failures"""
        self.server.shutdown()
        self.server.server_close()

        with self.assertRaises(CalendarServerError):
            self.calendar.get_timestamp(b'\x01\x02\x03\x04', timeout=5)
