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

"""Proof lifecycle: create, submit, upgrade, verify

The engine has no scheduler of its own. Callers decide when to call
upgrade(); it's a cheap no-op while the calendars have nothing new, and safe
to repeat.
"""

import contextlib
import io
import logging

from bitcoin.core import b2x

from proofengine.core.op import OpSHA256
from proofengine.core.notary import BitcoinBlockHeaderAttestation
from proofengine.core.serialize import BytesSerializationContext, BytesDeserializationContext
from proofengine.core.timestamp import Timestamp
from proofengine.bitcoin import AttestationVerifier, VerificationResult, Verdict, FailureReason
from proofengine.cache import TimestampCache
from proofengine.calendar import (RemoteCalendar, UrlWhitelist, UpgradeError, DEFAULT_TIMEOUT,
                                  AllServersUnreachableError, InsufficientCalendarsError,
                                  submit_to_calendars, poll_calendars)
from proofengine.record import ProofRecord, ProofStatus, RecordBusyError

DEFAULT_CALENDAR_URLS = ['https://alice.btc.calendar.opentimestamps.org',
                         'https://bob.btc.calendar.opentimestamps.org',
                         'https://finney.calendar.eternitywall.com']

DEFAULT_WHITELIST = ['https://*.calendar.opentimestamps.org',
                     'https://*.calendar.eternitywall.com']


def copy_timestamp(timestamp):
    """Deep copy of a non-empty proof tree"""
    ctx = BytesSerializationContext()
    timestamp.serialize(ctx)
    return Timestamp.deserialize(BytesDeserializationContext(ctx.getbytes()), timestamp.msg)


class ProofEngine:
    """Orchestrates calendars and verification for ProofRecords

    calendar_urls - calendars new digests are submitted to
    provider      - Bitcoin block header provider; without one, resolved
                    attestations can't get past Confirmed
    timeout       - per-request timeout, in seconds
    m             - minimum number of calendars that must accept a digest
    whitelist     - UrlWhitelist of calendars pending attestations may be
                    upgraded from; defaults to calendar_urls plus the
                    well-known public calendars
    cache         - TimestampCache for upgrade fragments
    remote_calendar - factory turning a calendar URL into a calendar client
    """

    def __init__(self, calendar_urls=None, provider=None, timeout=DEFAULT_TIMEOUT, m=1,
                 whitelist=None, cache=None, remote_calendar=RemoteCalendar, file_hash_op=None):
        self.calendar_urls = list(calendar_urls) if calendar_urls is not None else list(DEFAULT_CALENDAR_URLS)

        n = len(self.calendar_urls)
        if m > n or m <= 0:
            raise ValueError("m (%d) cannot be greater than available calendar%s (%d) neither less or equal 0" % (m, "" if n == 1 else "s", n))

        self.m = m
        self.timeout = timeout
        self.verifier = AttestationVerifier(provider)

        if whitelist is None:
            whitelist = UrlWhitelist(DEFAULT_WHITELIST + self.calendar_urls)
        self.whitelist = whitelist

        self.cache = cache if cache is not None else TimestampCache(None)
        self.remote_calendar = remote_calendar
        self.file_hash_op = file_hash_op if file_hash_op is not None else OpSHA256()

    @contextlib.contextmanager
    def _writing(self, record):
        if not record.writer_lock.acquire(blocking=False):
            raise RecordBusyError("%r is already being modified" % record)
        try:
            yield record
        finally:
            record.writer_lock.release()

    def create(self, content):
        """Create a draft record for content; no network access"""
        return self.create_from_fd(io.BytesIO(content))

    def create_from_fd(self, fd):
        record = ProofRecord.from_fd(self.file_hash_op, fd)
        logging.debug("Created record for %s digest %s" % (self.file_hash_op.TAG_NAME, b2x(record.digest)))
        return record

    def submit(self, record, cancel=None):
        """Submit a draft record's digest to the calendars

        On success the record holds one branch per responding calendar and is
        Submitted. If too few calendars respond it is marked Failed instead;
        submitting it again is allowed.
        """
        with self._writing(record):
            if record.status not in (ProofStatus.DRAFT, ProofStatus.FAILED) or len(record.timestamp):
                raise ValueError("Can't submit %r: already submitted" % record)

            try:
                submissions = submit_to_calendars(record.digest, self.calendar_urls,
                                                  timeout=self.timeout, m=self.m, cancel=cancel,
                                                  remote_calendar=self.remote_calendar)
            except AllServersUnreachableError as exp:
                logging.error("Failed to create timestamp: %s" % exp)
                record.status = ProofStatus.FAILED
                record.failure_reason = FailureReason.ALL_SERVERS_UNREACHABLE
                return record
            except InsufficientCalendarsError as exp:
                logging.error("Failed to create timestamp: %s" % exp)
                record.status = ProofStatus.FAILED
                record.failure_reason = FailureReason.INSUFFICIENT_CALENDARS
                return record

            record.timestamp = Timestamp.merge_all(record.digest, [s.timestamp for s in submissions])
            record.status = ProofStatus.SUBMITTED
            record.failure_reason = None

            logging.info("Submitted %s to %d calendar%s" % (b2x(record.digest), len(submissions), "" if len(submissions) == 1 else "s"))
            return record

    def upgrade(self, record, cancel=None):
        """Attempt to upgrade pending branches of a record

        Each pending branch is checked against the local cache, then polled
        from its calendar; branches that resolved are spliced into the tree and
        the record is re-verified. Records that aren't Submitted or Confirmed
        are left alone.

        Returns True if the proof changed, False otherwise. Calling it while
        every calendar says "not yet" changes nothing.
        """
        with self._writing(record):
            if record.status not in (ProofStatus.SUBMITTED, ProofStatus.CONFIRMED):
                logging.debug("Not upgrading %r" % record)
                return False

            # Work on a copy, so concurrent verify() calls see either the old
            # tree or the new one, never a tree being modified.
            timestamp = copy_timestamp(record.timestamp)

            changed = self._upgrade_from_cache(timestamp)
            changed |= self._upgrade_from_calendars(timestamp, cancel)

            record.timestamp = timestamp
            self._update_status(record)
            return changed

    def _upgrade_from_cache(self, timestamp):
        changed = False
        for path, attestation in timestamp.pending_branches():
            commitment = timestamp.walk(path).msg
            try:
                cached_stamp = self.cache[commitment]
            except KeyError:
                continue

            new_attestations = self._new_attestations(timestamp, path, cached_stamp)
            if new_attestations:
                logging.info("Got %d attestation(s) from cache" % len(new_attestations))
                timestamp.replace_branch(path, cached_stamp, attestation)
                changed = True

        return changed

    def _upgrade_from_calendars(self, timestamp, cancel):
        requests = []
        for path, attestation in timestamp.pending_branches():
            if attestation.uri not in self.whitelist:
                logging.warning("Ignoring attestation from calendar %s: Calendar not in whitelist" % attestation.uri)
                continue

            requests.append(((path, attestation), attestation.uri, timestamp.walk(path).msg))

        if not requests:
            return False

        results = poll_calendars(requests, timeout=self.timeout, cancel=cancel,
                                 remote_calendar=self.remote_calendar)

        changed = False
        for key, calendar_url, commitment in requests:
            path, attestation = key
            outcome = results[key]

            if outcome is None:
                logging.info("Calendar %s: Pending confirmation" % calendar_url)
                continue

            elif isinstance(outcome, UpgradeError):
                logging.warning("Calendar %s: %s" % (calendar_url, outcome))
                continue

            new_attestations = self._new_attestations(timestamp, path, outcome)
            if not new_attestations:
                logging.debug("Calendar %s: nothing new" % calendar_url)
                continue

            logging.info("Got %d attestation(s) from %s" % (len(new_attestations), calendar_url))
            for msg, att in new_attestations:
                logging.debug("    %r" % att)

            self.cache.merge(outcome)
            timestamp.replace_branch(path, outcome, attestation)
            changed = True

        return changed

    @staticmethod
    def _new_attestations(timestamp, path, fragment):
        # Compared as (msg, attestation) pairs under the pending node only;
        # two calendars committing to the same block are both new.
        return set(fragment.all_attestations()) - set(timestamp.walk(path).all_attestations())

    def _update_status(self, record):
        if not any(att.__class__ == BitcoinBlockHeaderAttestation
                   for msg, att in record.timestamp.all_attestations()):
            return

        result = self.verifier.verify_record(record)

        if result.verdict is Verdict.VERIFIED:
            logging.info("Success! %s" % result)
            record.status = ProofStatus.VERIFIED
            record.failure_reason = None
            record.block_height = result.height
            record.attested_time = result.attested_time

        elif any(failure.reason is not FailureReason.MERKLE_MISMATCH for failure in result.failures):
            # Resolved, but we couldn't check it
            logging.warning("Bitcoin attestation not checked: %s" % result.failures[0])
            record.status = ProofStatus.CONFIRMED

        elif result.verdict is Verdict.FAILED:
            logging.error("Bitcoin verification failed: %s" % result)
            record.status = ProofStatus.FAILED
            record.failure_reason = result.reason

        else:
            # Confirmed would claim an unchecked leaf that was in fact checked
            logging.warning("Bitcoin attestation does not verify; still waiting on pending calendars")
            if record.status is ProofStatus.CONFIRMED:
                record.status = ProofStatus.SUBMITTED

    def verify(self, record, content=None):
        """Check a record from scratch

        Works on any record, including ones read from someone else's proof
        file. If content is given it's hashed and compared to the record's
        digest first. Returns a VerificationResult; the record isn't modified.
        """
        if content is not None:
            digest = record.file_hash_op.hash_fd(io.BytesIO(content))
            if digest != record.digest:
                logging.debug("Expected digest %s, got %s" % (b2x(record.digest), b2x(digest)))
                return VerificationResult(Verdict.FAILED, FailureReason.DIGEST_MISMATCH)

        return self.verifier.verify_timestamp(record.timestamp)
