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

import logging
import os

from bitcoin.core import b2x

from proofengine.core.timestamp import Timestamp
from proofengine.core.serialize import (StreamSerializationContext, StreamDeserializationContext,
                                        DeserializationError)

class TimestampCache:
    """On-disk store of upgrade fragments, keyed by calendar commitment

    Many proofs share a calendar commitment once a calendar has aggregated
    them, so a fragment fetched while upgrading one proof can upgrade the
    others without another round trip. Each commitment gets one file holding
    the merged fragment, fanned out over two levels of directories by its
    leading bytes. A path of None gives a cache that stores nothing.
    """

    VERSION = 1

    # Commitments outside these lengths aren't cached, keeping filenames sane
    MIN_COMMITMENT_LENGTH = 4
    MAX_COMMITMENT_LENGTH = 64

    def __init__(self, path):
        self.path = path
        if path is not None:
            self._check_version()

    def _check_version(self):
        version_path = os.path.join(self.path, 'version')
        try:
            with open(version_path, 'r') as fd:
                version = fd.read().strip()
        except FileNotFoundError:
            os.makedirs(self.path, exist_ok=True)
            with open(version_path, 'w') as fd:
                fd.write('%d\n' % self.VERSION)
            return

        if version != str(self.VERSION):
            raise ValueError("Unknown timestamp cache version %r in %s" % (version, self.path))

    def _cacheable(self, commitment):
        return (self.path is not None and
                self.MIN_COMMITMENT_LENGTH <= len(commitment) <= self.MAX_COMMITMENT_LENGTH)

    def _filename(self, commitment):
        hex_commitment = b2x(commitment)
        return os.path.join(self.path, hex_commitment[0:2], hex_commitment[2:4], hex_commitment)

    def get(self, commitment):
        """The cached fragment for commitment, or None

        A file that doesn't parse is logged and treated as missing; the next
        merge for that commitment overwrites it.
        """
        if not self._cacheable(commitment):
            return None

        filename = self._filename(commitment)
        try:
            with open(filename, 'rb') as fd:
                ctx = StreamDeserializationContext(fd)
                fragment = Timestamp.deserialize(ctx, commitment)
                ctx.assert_eof()
        except FileNotFoundError:
            return None
        except DeserializationError as exp:
            logging.warning("Ignoring corrupt cache file %s: %s" % (filename, exp))
            return None

        return fragment

    def __getitem__(self, commitment):
        fragment = self.get(commitment)
        if fragment is None:
            raise KeyError(commitment)
        return fragment

    def __contains__(self, commitment):
        return self.get(commitment) is not None

    def merge(self, fragment):
        """Merge fragment into whatever is cached for its commitment"""
        if not self._cacheable(fragment.msg):
            return

        merged = self.get(fragment.msg)
        if merged is None:
            merged = Timestamp(fragment.msg)
        elif merged == fragment:
            return
        merged.merge(fragment)

        filename = self._filename(fragment.msg)
        os.makedirs(os.path.dirname(filename), exist_ok=True)

        # Readers see the old file or the new one, never half of one
        with open(filename + '.tmp', 'wb') as fd:
            merged.serialize(StreamSerializationContext(fd))
        os.replace(filename + '.tmp', filename)
        logging.debug("Cached fragment for commitment %s" % b2x(fragment.msg))
