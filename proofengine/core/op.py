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

"""Operations: the edges of a proof tree

Each operation maps a message to a new message and nothing else, so anyone
holding a proof can recompute every message in it. An operation is an
immutable tuple of its arguments; its class says what it does and which tag
byte it's written as.
"""

import binascii
import functools
import hashlib
import operator

from Crypto.Hash import RIPEMD160, keccak

from proofengine.core.serialize import UnknownOperationTagError

class MsgValueError(ValueError):
    """An operation can't be applied to this message

    Either the message is too long, or the result would be.
    """

class OpArgValueError(ValueError):
    """An operation argument is out of range, e.g. an empty append"""

OPS_BY_TAG = {}

def register_op(opcls):
    """Class decorator making opcls deserializable from its tag"""
    if opcls.TAG in OPS_BY_TAG:
        raise ValueError("Tag %r already taken by %s" % (opcls.TAG, OPS_BY_TAG[opcls.TAG].__name__))
    OPS_BY_TAG[opcls.TAG] = opcls
    return opcls

class Op(tuple):
    """Base class for all operations

    Ops compare and hash by (tag, arguments), which gives OpSet a stable
    serialization order: by tag first, then by argument bytes.
    """
    __slots__ = []

    TAG = None
    TAG_NAME = None

    # Caps the memory needed to verify any one path through a proof, as each
    # result can be discarded once the next op has been applied.
    MAX_MSG_LENGTH = 4096
    MAX_RESULT_LENGTH = 4096

    def _sort_key(self):
        return (self.TAG, tuple(self))

    def _compare(self, other, compare):
        if not isinstance(other, Op):
            return NotImplemented
        return compare(self._sort_key(), other._sort_key())

    # tuple's own comparisons ignore the tag, so all six are needed
    def __eq__(self, other): return self._compare(other, operator.eq)
    def __ne__(self, other): return self._compare(other, operator.ne)
    def __lt__(self, other): return self._compare(other, operator.lt)
    def __le__(self, other): return self._compare(other, operator.le)
    def __gt__(self, other): return self._compare(other, operator.gt)
    def __ge__(self, other): return self._compare(other, operator.ge)

    def __hash__(self):
        return hash(self._sort_key())

    def __repr__(self):
        return '%s()' % self.__class__.__name__

    def __str__(self):
        return self.TAG_NAME

    def _do_op_call(self, msg):
        raise NotImplementedError

    def __call__(self, msg):
        """Apply the operation to msg

        Raises MsgValueError if msg, or the result, is over the length limit.
        """
        if not isinstance(msg, bytes):
            raise TypeError("Expected message to be bytes; got %r" % msg.__class__)
        elif len(msg) > self.MAX_MSG_LENGTH:
            raise MsgValueError("Message too long; %d > %d" % (len(msg), self.MAX_MSG_LENGTH))

        result = self._do_op_call(msg)

        # An empty result would let a proof tree loop back on itself
        if not result:
            raise MsgValueError("%s gave an empty result" % self.TAG_NAME)
        elif len(result) > self.MAX_RESULT_LENGTH:
            raise MsgValueError("Result too long; %d > %d" % (len(result), self.MAX_RESULT_LENGTH))
        return result

    def serialize(self, ctx):
        ctx.write_bytes(self.TAG)

    @classmethod
    def _deserialize_args(cls, ctx):
        raise NotImplementedError

    @classmethod
    def deserialize_from_tag(cls, ctx, tag):
        """Read the rest of an op whose tag has already been read

        Only tags of cls or its subclasses are accepted; CryptOp.deserialize()
        rejects an append, for instance.
        """
        opcls = OPS_BY_TAG.get(tag)
        if opcls is None or not issubclass(opcls, cls):
            raise UnknownOperationTagError(tag)
        return opcls._deserialize_args(ctx)

    @classmethod
    def deserialize(cls, ctx):
        return cls.deserialize_from_tag(ctx, ctx.read_bytes(1))

class UnaryOp(Op):
    """Operations with no argument"""
    __slots__ = []

    def __new__(cls):
        return tuple.__new__(cls)

    @classmethod
    def _deserialize_args(cls, ctx):
        return cls()

class BinaryOp(Op):
    """Operations with a single bytes argument of 1 to 4096 bytes"""
    __slots__ = []

    def __new__(cls, arg):
        if not isinstance(arg, bytes):
            raise TypeError("arg must be bytes")
        elif not arg:
            raise OpArgValueError("%s arg can't be empty" % cls.__name__)
        elif len(arg) > cls.MAX_RESULT_LENGTH:
            raise OpArgValueError("%s arg too long: %d > %d" % (cls.__name__, len(arg), cls.MAX_RESULT_LENGTH))
        return tuple.__new__(cls, (arg,))

    @property
    def arg(self):
        return self[0]

    def __repr__(self):
        return '%s(%r)' % (self.__class__.__name__, self.arg)

    def __str__(self):
        return '%s %s' % (self.TAG_NAME, binascii.hexlify(self.arg).decode('utf8'))

    def serialize(self, ctx):
        super().serialize(ctx)
        ctx.write_varbytes(self.arg)

    @classmethod
    def _deserialize_args(cls, ctx):
        return cls(ctx.read_varbytes(cls.MAX_RESULT_LENGTH, min_len=1))


@register_op
class OpAppend(BinaryOp):
    """msg + arg"""
    TAG = b'\xf0'
    TAG_NAME = 'append'

    def _do_op_call(self, msg):
        return msg + self.arg

@register_op
class OpPrepend(BinaryOp):
    """arg + msg"""
    TAG = b'\xf1'
    TAG_NAME = 'prepend'

    def _do_op_call(self, msg):
        return self.arg + msg

@register_op
class OpReverse(UnaryOp):
    TAG = b'\xf2'
    TAG_NAME = 'reverse'

    def _do_op_call(self, msg):
        if not msg:
            raise MsgValueError("Can't reverse an empty message")
        return msg[::-1]


class CryptOp(UnaryOp):
    """Hash operations

    The result is always DIGEST_LENGTH bytes whatever the input, and these are
    the only ops that can be applied to a whole file, so a proof's file hash op
    is always one of them.
    """
    __slots__ = []

    DIGEST_LENGTH = None

    # Returns a fresh object with hashlib's update()/digest() interface
    new_hasher = None

    def _do_op_call(self, msg):
        hasher = self.new_hasher()
        hasher.update(msg)
        return hasher.digest()

    def hash_fd(self, fd):
        """Hash everything left in fd, reading it a megabyte at a time"""
        hasher = self.new_hasher()
        for chunk in iter(functools.partial(fd.read, 2**20), b''):
            hasher.update(chunk)
        return hasher.digest()

# Tags follow the RFC4880 hash algorithm numbers. Collision attacks don't hurt
# a timestamp: both colliding messages still existed before the attestation.

@register_op
class OpSHA1(CryptOp):
    TAG = b'\x02'
    TAG_NAME = 'sha1'
    DIGEST_LENGTH = 20
    new_hasher = staticmethod(hashlib.sha1)

@register_op
class OpRIPEMD160(CryptOp):
    # Not from hashlib; OpenSSL 3 only offers it through the legacy provider
    TAG = b'\x03'
    TAG_NAME = 'ripemd160'
    DIGEST_LENGTH = 20
    new_hasher = staticmethod(RIPEMD160.new)

@register_op
class OpSHA256(CryptOp):
    TAG = b'\x08'
    TAG_NAME = 'sha256'
    DIGEST_LENGTH = 32
    new_hasher = staticmethod(hashlib.sha256)

@register_op
class OpKECCAK256(CryptOp):
    # Original Keccak padding as used by Ethereum, not sha3_256
    TAG = b'\x67'
    TAG_NAME = 'keccak256'
    DIGEST_LENGTH = 32
    new_hasher = staticmethod(functools.partial(keccak.new, digest_bits=256))
