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

"""Reading and writing the primitives proofs are made of

Everything in a proof file, and in the fragments calendars hand back, is one
of three things: raw bytes of a length both sides already know, an unsigned
LEB128 integer ("varuint"), or bytes prefixed by their length as a varuint
("varbytes"). Parsing is strict; the same bytes always decode the same way or
not at all.
"""

import binascii
import io

class DeserializationError(Exception):
    """The input is not a valid encoding"""

class BadMagicError(DeserializationError):
    """The input doesn't start with the expected magic bytes"""
    def __init__(self, expected_magic, actual_magic):
        self.expected_magic = expected_magic
        self.actual_magic = actual_magic
        super().__init__('Expected magic bytes 0x%s, but got 0x%s instead' % (binascii.hexlify(expected_magic).decode(),
                                                                              binascii.hexlify(actual_magic).decode()))

class UnsupportedMajorVersion(DeserializationError):
    """The proof was written by a newer, incompatible version of the format"""

class UnknownOperationTagError(DeserializationError):
    """An operation tag we can't evaluate

    Unknown attestations are carried along as opaque bytes, but an unknown
    operation makes every message below it uncomputable.
    """
    def __init__(self, tag):
        self.tag = tag
        super().__init__('Unknown operation tag 0x%s' % binascii.hexlify(tag).decode())

class TruncationError(DeserializationError):
    """The input ended in the middle of a value"""

class TrailingGarbageError(DeserializationError):
    """Bytes left over after a complete value was read"""

class RecursionLimitError(DeserializationError):
    """The proof tree nests deeper than we're willing to follow"""


class StreamSerializationContext:
    """Writes primitives to a file-like object"""

    def __init__(self, fd):
        self.fd = fd

    def write_varuint(self, value):
        if value < 0:
            raise ValueError('varuint must be non-negative; got %d' % value)

        # Seven bits per byte, least significant first; the high bit is set on
        # every byte but the last.
        encoded = bytearray()
        while True:
            septet = value & 0x7f
            value >>= 7
            if not value:
                encoded.append(septet)
                break
            encoded.append(septet | 0x80)

        self.fd.write(bytes(encoded))

    def write_bytes(self, value):
        self.fd.write(value)

    def write_varbytes(self, value):
        self.write_varuint(len(value))
        self.write_bytes(value)

class StreamDeserializationContext:
    """Reads primitives from a file-like object

    Every read either returns exactly what was asked for or raises a
    DeserializationError.
    """

    def __init__(self, fd):
        self.fd = fd

    def _read_exactly(self, length):
        data = self.fd.read(length)
        if len(data) != length:
            raise TruncationError('Tried to read %d bytes but got only %d bytes' % (length, len(data)))
        return data

    def read_varuint(self):
        value = 0
        shift = 0
        more = True
        while more:
            byte = self._read_exactly(1)[0]
            value |= (byte & 0x7f) << shift
            more = bool(byte & 0x80)
            shift += 7
        return value

    def read_bytes(self, expected_length):
        return self._read_exactly(expected_length)

    def read_varbytes(self, max_len, min_len=0):
        """Read a length-prefixed byte string of min_len to max_len bytes

        The length is checked before anything else is read, so a bogus length
        can't make us try to read gigabytes.
        """
        length = self.read_varuint()
        if length > max_len:
            raise DeserializationError('varbytes max length exceeded; %d > %d' % (length, max_len))
        elif length < min_len:
            raise DeserializationError('varbytes min length not met; %d < %d' % (length, min_len))
        return self._read_exactly(length)

    def assert_magic(self, expected_magic):
        """Raise BadMagicError unless the next bytes are expected_magic"""
        actual_magic = self.fd.read(len(expected_magic))
        if actual_magic != expected_magic:
            raise BadMagicError(expected_magic, actual_magic)

    def assert_eof(self):
        """Raise TrailingGarbageError unless the input is used up"""
        if self.fd.read(1):
            raise TrailingGarbageError("Trailing garbage found after end of deserialized data")

class BytesSerializationContext(StreamSerializationContext):
    """Writes primitives to an in-memory buffer"""

    def __init__(self):
        super().__init__(io.BytesIO())

    def getbytes(self):
        return self.fd.getvalue()

class BytesDeserializationContext(StreamDeserializationContext):
    """Reads primitives from bytes"""

    def __init__(self, buf):
        super().__init__(io.BytesIO(buf))
