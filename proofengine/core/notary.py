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

"""Time attestations and their verification errors"""

import proofengine.core.serialize

class VerificationError(Exception):
    """Attestation verification errors"""

class MerkleMismatchError(VerificationError):
    """The committed digest is not the block's merkle root"""

class BlockNotFoundError(VerificationError):
    """The attested block height isn't known to the chain-data provider"""

class ProviderUnavailableError(VerificationError):
    """The chain-data provider couldn't be reached"""

class TimeAttestation:
    """Time-attesting signature

    Attestations are the leaves of the proof tree; each one claims that the
    message it's attached to existed as of some time.
    """

    TAG = None
    TAG_SIZE = 8

    MAX_PAYLOAD_SIZE = 8192
    """Maximum size of a attestation payload"""

    def _serialize_payload(self, ctx):
        raise NotImplementedError

    def serialize(self, ctx):
        ctx.write_bytes(self.TAG)

        payload_ctx = proofengine.core.serialize.BytesSerializationContext()
        self._serialize_payload(payload_ctx)

        ctx.write_varbytes(payload_ctx.getbytes())

    def _sort_key(self):
        raise NotImplementedError

    def __eq__(self, other):
        if isinstance(other, TimeAttestation):
            return self.TAG == other.TAG and self._sort_key() == other._sort_key()
        else:
            return NotImplemented

    def __lt__(self, other):
        """Implementation of less than operator

        Attestations of different types order by tag; the order is only used
        to make serialization deterministic.
        """
        if isinstance(other, TimeAttestation):
            if self.TAG == other.TAG:
                return self._sort_key() < other._sort_key()
            else:
                return self.TAG < other.TAG

        else:
            return NotImplemented

    def __hash__(self):
        return hash((self.TAG, self._sort_key()))

    @classmethod
    def deserialize(cls, ctx):
        tag = ctx.read_bytes(cls.TAG_SIZE)

        serialized_attestation = ctx.read_varbytes(cls.MAX_PAYLOAD_SIZE)

        payload_ctx = proofengine.core.serialize.BytesDeserializationContext(serialized_attestation)

        if tag == PendingAttestation.TAG:
            r = PendingAttestation.deserialize(payload_ctx)
        elif tag == BitcoinBlockHeaderAttestation.TAG:
            r = BitcoinBlockHeaderAttestation.deserialize(payload_ctx)
        else:
            return UnknownAttestation(tag, serialized_attestation)

        # If attestations want to have unspecified fields for future
        # upgradability they should do so explicitly.
        payload_ctx.assert_eof()
        return r

class UnknownAttestation(TimeAttestation):
    """Placeholder for attestations that we don't support

    The tag and payload are kept verbatim so that re-serializing the proof
    reproduces them byte-for-byte. They can't be verified.
    """

    def __init__(self, tag, payload):
        if tag.__class__ != bytes:
            raise TypeError("tag must be bytes instance; got %r" % tag.__class__)
        elif len(tag) != self.TAG_SIZE:
            raise ValueError("tag must be exactly %d bytes long; got %d" % (self.TAG_SIZE, len(tag)))

        if payload.__class__ != bytes:
            raise TypeError("payload must be bytes instance; got %r" % payload.__class__)
        elif len(payload) > self.MAX_PAYLOAD_SIZE:
            raise ValueError("payload must be <= %d bytes long; got %d" % (self.MAX_PAYLOAD_SIZE, len(payload)))

        self.TAG = tag
        self.payload = payload

    def __repr__(self):
        return 'UnknownAttestation(%r, %r)' % (self.TAG, self.payload)

    def __str__(self):
        return 'unknown attestation %s' % self.TAG.hex()

    def _sort_key(self):
        return self.payload

    def _serialize_payload(self, ctx):
        # Notice how this is write_bytes, not write_varbytes - the latter would
        # incorrectly add a length header to the actual payload.
        ctx.write_bytes(self.payload)


# Note how neither of these attestations actually has the time...

class PendingAttestation(TimeAttestation):
    """Pending attestation

    Commitment has been recorded in a remote calendar for future attestation,
    and we have a URI to find a more complete proof in the future.

    Nothing other than the URI is recorded. Remote calendars promise to keep
    commitments indefinitely, so from the moment they are created it should be
    possible to find the commitment in the calendar.
    """

    TAG = bytes.fromhex('83dfe30d2ef90c8e')

    MAX_URI_LENGTH = 1000
    """Maximum legal URI length, in bytes"""

    ALLOWED_URI_CHARS = b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-._/:"
    """Characters allowed in URI's

    Note how we've left out the characters necessary for parameters, queries,
    or fragments, as well as IPv6 [] notation, percent-encoding special
    characters, and @ login notation.
    """

    @classmethod
    def check_uri(cls, uri):
        """Check URI for validity

        Raises ValueError appropriately
        """
        if len(uri) > cls.MAX_URI_LENGTH:
            raise ValueError("URI exceeds maximum length")
        for char in uri:
            if char not in cls.ALLOWED_URI_CHARS:
                raise ValueError("URI contains invalid character %r" % bytes([char]))

    def __init__(self, uri):
        if not isinstance(uri, str):
            raise TypeError("URI must be a string")
        self.check_uri(uri.encode())
        self.uri = uri

    def __repr__(self):
        return 'PendingAttestation(%r)' % self.uri

    def __str__(self):
        return 'PendingAttestation(%r)' % self.uri

    def _sort_key(self):
        return self.uri

    def _serialize_payload(self, ctx):
        ctx.write_varbytes(self.uri.encode())

    @classmethod
    def deserialize(cls, ctx):
        utf8_uri = ctx.read_varbytes(cls.MAX_URI_LENGTH)

        try:
            cls.check_uri(utf8_uri)
        except ValueError as exp:
            raise proofengine.core.serialize.DeserializationError("Invalid URI: %r" % exp)

        return PendingAttestation(utf8_uri.decode())

class BitcoinBlockHeaderAttestation(TimeAttestation):
    """Signed by the Bitcoin blockchain

    The commitment digest will be the merkleroot of the blockheader.

    The block height is recorded so that looking up the correct block header in
    an external block header database doesn't require every header to be stored
    locally. Otherwise no additional redundant data about the block header is
    recorded: implementations must get the block header from a by-height index,
    check that the merkleroots match, and then calculate the time from the
    header information.
    """

    TAG = bytes.fromhex('0588960d73d71901')

    def __init__(self, height):
        if not isinstance(height, int) or height < 0:
            raise ValueError("Block height must be a non-negative integer; got %r" % height)
        self.height = height

    def _sort_key(self):
        return self.height

    def verify_against_blockheader(self, digest, block_header):
        """Verify attestation against a block header

        Returns the block time on success; raises MerkleMismatchError on
        failure.
        """
        if len(digest) != 32:
            raise MerkleMismatchError("Expected digest with length 32 bytes; got %d bytes" % len(digest))
        elif digest != block_header.hashMerkleRoot:
            raise MerkleMismatchError("Digest does not match merkleroot")

        return block_header.nTime

    def __repr__(self):
        return 'BitcoinBlockHeaderAttestation(%r)' % self.height

    def __str__(self):
        return 'BitcoinBlockHeaderAttestation(%r)' % self.height

    def _serialize_payload(self, ctx):
        ctx.write_varuint(self.height)

    @classmethod
    def deserialize(cls, ctx):
        height = ctx.read_varuint()
        return BitcoinBlockHeaderAttestation(height)
