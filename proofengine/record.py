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

"""Proof records and the proof file format"""

import binascii
import enum
import threading

from proofengine.core.op import CryptOp
from proofengine.core.notary import BitcoinBlockHeaderAttestation
from proofengine.core.serialize import (BytesSerializationContext, BytesDeserializationContext,
                                        UnsupportedMajorVersion)
from proofengine.core.timestamp import Timestamp


class ProofStatus(enum.Enum):
    DRAFT = 'draft'
    SUBMITTED = 'submitted'
    CONFIRMED = 'confirmed'
    VERIFIED = 'verified'
    FAILED = 'failed'


class RecordBusyError(RuntimeError):
    """Another submit or upgrade is already modifying this record"""


class ProofRecord:
    """A digest, the proof tree committing to it, and where it stands

    Only the file hash op and the proof tree go into the proof file. The
    status, failure reason and verified block details are lifecycle metadata
    maintained by ProofEngine; they're ignored by equality.

    Records have a single writer at a time. ProofEngine takes
    writer_lock (non-blocking) for the duration of submit() and upgrade().
    """

    HEADER_MAGIC = b'\x00OpenTimestamps\x00\x00Proof\x00\xbf\x89\xe2\xe8\x84\xe8\x92\x94'
    """Header magic bytes

    Designed to be give the user some information in a hexdump, while being
    identified as 'data' by the file utility.
    """

    MAJOR_VERSION = 1

    def __init__(self, file_hash_op, timestamp, status=ProofStatus.DRAFT):
        if not isinstance(file_hash_op, CryptOp):
            raise TypeError("file_hash_op must be a CryptOp; got %r" % file_hash_op.__class__)

        if len(timestamp.msg) != file_hash_op.DIGEST_LENGTH:
            raise ValueError("Timestamp message length and file_hash_op digest length differ")

        self.file_hash_op = file_hash_op
        self.timestamp = timestamp
        self.status = status
        self.failure_reason = None
        self.block_height = None
        self.attested_time = None
        self.writer_lock = threading.Lock()

    @property
    def digest(self):
        """The digest of the content that was timestamped"""
        return self.timestamp.msg

    def __repr__(self):
        return 'ProofRecord(<%s:%s>, %s)' % (str(self.file_hash_op),
                                             binascii.hexlify(self.digest).decode('utf8'),
                                             self.status.value)

    def __eq__(self, other):
        return (self.__class__ == other.__class__ and
                self.file_hash_op == other.file_hash_op and
                self.timestamp == other.timestamp)

    __hash__ = None

    @classmethod
    def from_fd(cls, file_hash_op, fd):
        return cls(file_hash_op, Timestamp(file_hash_op.hash_fd(fd)))

    def infer_status(self):
        """Status implied by the proof tree alone"""
        if not len(self.timestamp):
            return ProofStatus.DRAFT

        for msg, attestation in self.timestamp.all_attestations():
            if attestation.__class__ == BitcoinBlockHeaderAttestation:
                return ProofStatus.CONFIRMED

        return ProofStatus.SUBMITTED

    def serialize(self, ctx):
        ctx.write_bytes(self.HEADER_MAGIC)

        ctx.write_varuint(self.MAJOR_VERSION)

        self.file_hash_op.serialize(ctx)
        assert self.file_hash_op.DIGEST_LENGTH == len(self.timestamp.msg)
        ctx.write_bytes(self.timestamp.msg)

        self.timestamp.serialize(ctx)

    @classmethod
    def deserialize(cls, ctx):
        ctx.assert_magic(cls.HEADER_MAGIC)

        major = ctx.read_varuint()
        if major != cls.MAJOR_VERSION:
            raise UnsupportedMajorVersion("Version %d proof files are not supported" % major)

        # CryptOp.deserialize() only accepts hash op tags; anything else is an
        # UnknownOperationTagError here.
        file_hash_op = CryptOp.deserialize(ctx)
        file_hash = ctx.read_bytes(file_hash_op.DIGEST_LENGTH)
        timestamp = Timestamp.deserialize(ctx, file_hash)

        ctx.assert_eof()

        self = cls(file_hash_op, timestamp)
        self.status = self.infer_status()
        return self


def encode_proof(record):
    """Serialize a record to proof file bytes

    Raises ValueError for a record without any branches yet.
    """
    ctx = BytesSerializationContext()
    record.serialize(ctx)
    return ctx.getbytes()


def decode_proof(data):
    """Deserialize proof file bytes

    Raises a DeserializationError subclass on any malformed input.
    """
    return ProofRecord.deserialize(BytesDeserializationContext(data))
