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

import contextlib
import io
import os
import tempfile
import unittest
import unittest.mock

import proofengine.args
import proofengine.bitcoin
import proofengine.cmds
from proofengine.core.op import OpSHA256
from proofengine.engine import ProofEngine
from proofengine.record import ProofStatus, decode_proof
from proofengine.tests.fakes import FakeCalendar

CALENDAR_URL = 'https://cal.example.com'

class Test_cmds(unittest.TestCase):
    def setUp(self):
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.dir = tmpdir.name

        self.target = os.path.join(self.dir, 'hello.txt')
        with open(self.target, 'wb') as fd:
            fd.write(b'hello')

        self.calendar = FakeCalendar(CALENDAR_URL)

    def parse(self, *raw_args):
        args = proofengine.args.parse_ots_args(['--no-cache', '--no-bitcoin', '-l', CALENDAR_URL] + list(raw_args))
        self.addCleanup(self.close_files, args)

        def setup_engine():
            return ProofEngine(calendar_urls=[CALENDAR_URL], provider=None,
                               whitelist=args.whitelist,
                               remote_calendar=lambda url: self.calendar)
        args.setup_engine = setup_engine
        return args

    def close_files(self, args):
        for fd in list(getattr(args, 'files', None) or []) + [getattr(args, name, None) for name in ('timestamp_fd', 'target_fd', 'file')]:
            if fd is not None:
                fd.close()

    def stamp(self):
        args = self.parse('stamp', self.target)
        args.cmd_func(args)
        return self.target + '.ots'

    def test_stamp(self):
        """Stamping a file writes a proof next to it"""
        path = self.stamp()

        with open(path, 'rb') as fd:
            record = decode_proof(fd.read())
        self.assertEqual(record.digest, OpSHA256()(b'hello'))
        self.assertEqual(record.status, ProofStatus.SUBMITTED)
        self.assertEqual(self.calendar.submitted, [OpSHA256()(b'hello')])

    def test_stamp_failed(self):
        """No proof is written if the calendars don't respond"""
        self.calendar.error = OSError('unreachable')

        with self.assertRaises(SystemExit):
            self.stamp()
        self.assertFalse(os.path.exists(self.target + '.ots'))

    def test_info(self):
        path = self.stamp()

        args = self.parse('info', path)
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            args.cmd_func(args)

        self.assertIn("File sha256 hash: %s" % OpSHA256()(b'hello').hex(), out.getvalue())
        self.assertIn("Status: submitted", out.getvalue())

    def test_verify_pending(self):
        """Verifying a timestamp that isn't complete yet"""
        path = self.stamp()

        args = self.parse('verify', path)
        with self.assertRaises(SystemExit) as cm:
            args.cmd_func(args)
        self.assertEqual(cm.exception.code, 1)

    def test_verify_wrong_digest(self):
        path = self.stamp()

        args = self.parse('verify', '-d', '00'*32, path)
        with self.assertRaises(SystemExit):
            args.cmd_func(args)

    def test_upgrade_dry_run(self):
        """Dry runs leave the proof file alone"""
        path = self.stamp()
        with open(path, 'rb') as fd:
            before = fd.read()

        args = self.parse('upgrade', '--dry-run', path)
        with self.assertRaises(SystemExit):
            args.cmd_func(args)

        with open(path, 'rb') as fd:
            self.assertEqual(fd.read(), before)
        self.assertFalse(os.path.exists(path + '.bak'))

    def test_not_a_proof(self):
        args = self.parse('info', self.target)
        with self.assertRaises(SystemExit):
            args.cmd_func(args)

    def test_setup_engine_without_bitcoin_node(self):
        """Stamping doesn't need a reachable Bitcoin node"""
        args = proofengine.args.parse_ots_args(['--no-cache', 'stamp', self.target])
        self.addCleanup(self.close_files, args)

        with unittest.mock.patch('bitcoin.rpc.Proxy', side_effect=ValueError('Cookie file unusable')) as proxy:
            engine = args.setup_engine()
            self.assertFalse(proxy.called)

            self.assertIsInstance(engine.verifier.provider, proofengine.bitcoin.BitcoinCoreBlockHeaderProvider)
            with self.assertRaises(ConnectionError):
                engine.verifier.provider.get_block_header(100)

    def test_setup_engine_no_bitcoin(self):
        args = proofengine.args.parse_ots_args(['--no-cache', '--no-bitcoin', 'stamp', self.target])
        self.addCleanup(self.close_files, args)
        self.assertIsNone(args.setup_engine().verifier.provider)
