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

"""In-memory calendars and block header providers for tests"""

import threading

from bitcoin.core import CBlockHeader

from proofengine.bitcoin import BlockHeaderProvider
from proofengine.calendar import CommitmentNotFoundError
from proofengine.core.op import OpAppend
from proofengine.core.notary import PendingAttestation
from proofengine.core.timestamp import Timestamp

class FakeCalendar:
    """Calendar that answers from memory

    Submissions get a single append op with nonce, then a pending attestation
    to this calendar. Upgrades come from the upgrades dict, keyed by
    commitment; anything else is not found.
    """
    def __init__(self, url, nonce=b'\x01', error=None):
        self.url = url
        self.nonce = nonce
        self.error = error
        self.upgrades = {}
        self.submitted = []
        self.polled = []

    def submit(self, digest, timeout=None):
        self.submitted.append(digest)
        if self.error is not None:
            raise self.error

        stamp = Timestamp(digest)
        stamp.ops.add(OpAppend(self.nonce)).attestations.add(PendingAttestation(self.url))
        return stamp

    def get_timestamp(self, commitment, timeout=None):
        self.polled.append(commitment)
        if self.error is not None:
            raise self.error

        try:
            return self.upgrades[commitment]
        except KeyError:
            raise CommitmentNotFoundError("Pending confirmation in Bitcoin blockchain")

class HangingCalendar(FakeCalendar):
    """Calendar that never answers until released"""
    def __init__(self, url):
        super().__init__(url)
        self.release = threading.Event()

    def submit(self, digest, timeout=None):
        self.submitted.append(digest)
        self.release.wait(5)
        raise TimeoutError("timed out")

    def get_timestamp(self, commitment, timeout=None):
        self.polled.append(commitment)
        self.release.wait(5)
        raise TimeoutError("timed out")

class FakeBlockHeaderProvider(BlockHeaderProvider):
    """Block headers from a dict of height -> (merkle root, time)"""
    def __init__(self, blocks=None, unavailable=False):
        self.blocks = dict(blocks or {})
        self.unavailable = unavailable
        self.requested = []

    def get_block_header(self, height):
        self.requested.append(height)
        if self.unavailable:
            raise ConnectionError("provider offline")

        merkle_root, block_time = self.blocks[height]
        return CBlockHeader(hashMerkleRoot=merkle_root, nTime=block_time)
