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

"""Remote calendar protocol

Calendars accept digests with POST /digest, returning a fragment of proof
tree that ends in a PendingAttestation for that calendar. Later,
GET /timestamp/<hex commitment> returns a more complete fragment once the
calendar's commitment has been anchored; 404 means not yet.
"""

import binascii
import collections
import fnmatch
import logging
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from queue import Queue, Empty

import proofengine
from proofengine.core.timestamp import Timestamp
from proofengine.core.serialize import BytesDeserializationContext, DeserializationError

DEFAULT_TIMEOUT = 15
"""Seconds to wait for a calendar before giving up on it"""

CANCEL_POLL_INTERVAL = 0.1


class CommitmentNotFoundError(KeyError):
    """The calendar has nothing newer for this commitment yet"""
    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason


class SubmissionError(Exception):
    """Submitting a digest to calendars failed as a whole"""

class AllServersUnreachableError(SubmissionError):
    """No calendar accepted the digest"""

class InsufficientCalendarsError(SubmissionError):
    """Fewer calendars accepted the digest than were required"""


class UpgradeError(Exception):
    """Polling a calendar for an upgraded proof failed

    These are recoverable; try again later.
    """

class CalendarServerError(UpgradeError):
    """The calendar couldn't be reached, or answered with an error"""

class MalformedResponseError(UpgradeError):
    """The calendar answered, but not with a valid proof fragment"""


class RemoteCalendar:
    """Remote calendar server interface"""

    MAX_RESPONSE_SIZE = 10000

    def __init__(self, url, user_agent=proofengine.implementation_identifier):
        if not isinstance(url, str):
            raise TypeError("URL must be a string")
        self.url = url.rstrip('/')

        self.request_headers = {"Accept": "application/vnd.opentimestamps.v1",
                                "User-Agent": user_agent}

    def __repr__(self):
        return 'RemoteCalendar(%r)' % self.url

    def _read_fragment(self, resp, msg):
        resp_bytes = resp.read(self.MAX_RESPONSE_SIZE + 1)
        if len(resp_bytes) > self.MAX_RESPONSE_SIZE:
            raise MalformedResponseError("Calendar response exceeded size limit")

        ctx = BytesDeserializationContext(resp_bytes)
        try:
            fragment = Timestamp.deserialize(ctx, msg)
            ctx.assert_eof()
        except DeserializationError as exp:
            raise MalformedResponseError("Invalid proof fragment from %s: %s" % (self.url, exp))
        return fragment

    def submit(self, digest, timeout=None):
        """Submit a digest to the calendar

        Returns a Timestamp committing to that digest
        """
        req = urllib.request.Request(self.url + '/digest', data=digest, headers=self.request_headers)
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            if resp.status != 200:
                raise CalendarServerError("Unknown response from calendar: %d" % resp.status)

            return self._read_fragment(resp, digest)

    def get_timestamp(self, commitment, timeout=None):
        """Get a timestamp for a given commitment

        Raises CommitmentNotFoundError if the calendar doesn't have anything
        for that commitment yet.
        """
        req = urllib.request.Request(self.url + '/timestamp/' + binascii.hexlify(commitment).decode('utf8'),
                                     headers=self.request_headers)
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp:
                if resp.status != 200:
                    raise CalendarServerError("Unknown response from calendar: %d" % resp.status)

                return self._read_fragment(resp, commitment)

        except urllib.error.HTTPError as exp:
            if exp.code == 404:
                reason = exp.read(1000).decode('utf8', 'replace').strip() or "Commitment not found"
                raise CommitmentNotFoundError(reason)
            else:
                raise CalendarServerError("Calendar %s returned HTTP %d" % (self.url, exp.code))

        except (urllib.error.URLError, OSError) as exp:
            raise CalendarServerError("Calendar %s unreachable: %s" % (self.url, exp))


class UrlWhitelist(set):
    """Glob-matching whitelist for URL's"""

    def __init__(self, urls=()):
        for url in urls:
            self.add(url)

    def add(self, url):
        if not isinstance(url, str):
            raise TypeError("URL must be a string")

        if url.startswith('http://') or url.startswith('https://'):
            parsed_url = urllib.parse.urlparse(url)

            if parsed_url.params or parsed_url.query or parsed_url.fragment:
                raise ValueError("Whitelisted URL %r can't have parameters, a query, or a fragment" % url)

            set.add(self, parsed_url)

        else:
            self.add('http://' + url)
            self.add('https://' + url)

    def __contains__(self, url):
        parsed_url = urllib.parse.urlparse(url)

        if parsed_url.params or parsed_url.query or parsed_url.fragment:
            return False

        for pattern in self:
            if (parsed_url.scheme == pattern.scheme and
                    parsed_url.path == pattern.path and
                    fnmatch.fnmatch(parsed_url.netloc, pattern.netloc)):
                return True

        else:
            return False


CalendarSubmission = collections.namedtuple('CalendarSubmission', ['calendar_url', 'timestamp'])


def scatter_gather(jobs, timeout, cancel=None):
    """Run jobs concurrently, one thread each, and collect their outcomes

    jobs is an iterable of (key, func) pairs. Returns a list of (key, outcome)
    pairs in the order they finished, where outcome is either func's return
    value or the exception it raised. Jobs still running when timeout seconds
    have passed, or when the cancel event is set, are left out; their threads
    are daemons and are simply abandoned.
    """
    q = Queue()

    def run(key, func):
        try:
            q.put((key, func()))
        except Exception as exp:
            q.put((key, exp))

    n = 0
    for key, func in jobs:
        t = threading.Thread(target=run, args=(key, func), daemon=True)
        t.start()
        n += 1

    deadline = time.monotonic() + timeout
    outcomes = []
    while len(outcomes) < n:
        if cancel is not None and cancel.is_set():
            reason = "Cancelled"
        elif time.monotonic() >= deadline:
            reason = "Timed out"
        else:
            remaining = deadline - time.monotonic()
            if cancel is not None:
                remaining = min(remaining, CANCEL_POLL_INTERVAL)

            try:
                outcomes.append(q.get(block=True, timeout=max(remaining, 0)))
            except Empty:
                pass
            continue

        # Jobs that finished while we weren't looking still count
        while len(outcomes) < n:
            try:
                outcomes.append(q.get_nowait())
            except Empty:
                break

        if len(outcomes) < n:
            logging.debug("%s with %d of %d requests outstanding" % (reason, n - len(outcomes), n))
        break

    return outcomes


def submit_to_calendars(digest, calendar_urls, timeout=DEFAULT_TIMEOUT, m=1, cancel=None,
                        remote_calendar=RemoteCalendar):
    """Submit a digest to several calendars at once

    A calendar that errors, times out, or returns a malformed fragment is
    dropped. Returns one CalendarSubmission per calendar that responded, in
    response order.

    Raises AllServersUnreachableError if none responded, and
    InsufficientCalendarsError if fewer than m did.
    """
    calendar_urls = list(calendar_urls)
    if not calendar_urls:
        raise ValueError("Need at least one calendar")

    logging.debug("Doing %d-of-%d request, timeout is %d second%s" % (m, len(calendar_urls), timeout, "" if timeout == 1 else "s"))

    def make_job(calendar_url):
        calendar = remote_calendar(calendar_url)
        def job():
            logging.info('Submitting to remote calendar %s' % calendar_url)
            return calendar.submit(digest, timeout=timeout)
        return (calendar_url, job)

    start = time.monotonic()
    submissions = []
    for calendar_url, result in scatter_gather([make_job(url) for url in calendar_urls], timeout, cancel):
        if isinstance(result, Timestamp):
            if result.msg != digest:
                logging.warning("Calendar %s returned a timestamp for the wrong digest" % calendar_url)
                continue
            submissions.append(CalendarSubmission(calendar_url, result))
        else:
            logging.warning("Calendar %s: %s" % (calendar_url, result))

    logging.debug("%.2f seconds elapsed" % (time.monotonic() - start))

    if not submissions:
        raise AllServersUnreachableError("None of %d calendar%s responded" % (len(calendar_urls), "" if len(calendar_urls) == 1 else "s"))

    elif len(submissions) < m:
        raise InsufficientCalendarsError("Need at least %d attestation%s but received %d within timeout" % (m, "" if m == 1 else "s", len(submissions)))

    return submissions


def upgrade_from_calendar(calendar, commitment, timeout=DEFAULT_TIMEOUT):
    """Ask one calendar for a more complete proof of commitment

    Returns the fragment, or None if the calendar has nothing newer yet.
    Raises CalendarServerError or MalformedResponseError otherwise.
    """
    try:
        fragment = calendar.get_timestamp(commitment, timeout=timeout)
    except CommitmentNotFoundError as exp:
        logging.debug("Calendar %s: %s" % (calendar.url, exp.reason))
        return None

    if fragment.msg != commitment:
        raise MalformedResponseError("Calendar %s returned a timestamp for the wrong commitment" % calendar.url)

    return fragment


def poll_calendars(requests, timeout=DEFAULT_TIMEOUT, cancel=None, remote_calendar=RemoteCalendar):
    """Poll several calendars at once

    requests is an iterable of (key, calendar_url, commitment). Returns a dict
    mapping each key to a fragment, None (not yet attested), or an
    UpgradeError. Requests that time out or are cancelled map to a
    CalendarServerError.
    """
    requests = list(requests)

    def make_job(key, calendar_url, commitment):
        calendar = remote_calendar(calendar_url)
        def job():
            logging.debug("Checking calendar %s for %s" % (calendar_url, binascii.hexlify(commitment).decode('utf8')))
            return upgrade_from_calendar(calendar, commitment, timeout=timeout)
        return (key, job)

    results = {key: CalendarServerError("Calendar %s did not respond within %d seconds" % (calendar_url, timeout))
               for key, calendar_url, commitment in requests}

    for key, outcome in scatter_gather([make_job(*request) for request in requests], timeout, cancel):
        if isinstance(outcome, Exception) and not isinstance(outcome, UpgradeError):
            outcome = CalendarServerError(str(outcome))
        results[key] = outcome

    return results
