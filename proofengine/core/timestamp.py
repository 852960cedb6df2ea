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

import binascii

from proofengine.core.op import Op, MsgValueError
from proofengine.core.notary import TimeAttestation, PendingAttestation, BitcoinBlockHeaderAttestation

import proofengine.core.serialize

class OpSet(dict):
    """Set of operations"""
    __slots__ = ['__make_timestamp']
    def __init__(self, make_timestamp_func):
        self.__make_timestamp = make_timestamp_func

    def add(self, key):
        """Add key

        Returns the value associated with that key
        """
        try:
            return self[key]
        except KeyError:
            value = self.__make_timestamp(key)
            self[key] = value
            return value

    def __setitem__(self, op, new_timestamp):
        try:
            existing_timestamp = self[op]
        except KeyError:
            dict.__setitem__(self, op, new_timestamp)
            return

        if existing_timestamp.msg != new_timestamp.msg:
            raise ValueError("Can't change existing result timestamp: timestamps are for different messages")

        dict.__setitem__(self, op, new_timestamp)

class Timestamp:
    """Proof that one or more attestations commit to a message

    The proof is in the form of a tree, with each node being a message, and the
    edges being operations acting on those messages. The leafs of the tree are
    attestations that attest to the time that messages in the tree existed prior.

    A node with more than one outgoing edge is a fork; each branch is an
    independent path from the same intermediate message. Nodes are addressed
    by their path: the tuple of operations leading to them from the root.
    """
    __slots__ = ['__msg', 'attestations', 'ops']

    @property
    def msg(self):
        return self.__msg

    def __init__(self, msg):
        if not isinstance(msg, bytes):
            raise TypeError("Expected msg to be bytes; got %r" % msg.__class__)

        elif len(msg) > Op.MAX_MSG_LENGTH:
            raise ValueError("Message exceeds Op length limit; %d > %d" % (len(msg), Op.MAX_MSG_LENGTH))

        self.__msg = bytes(msg)
        self.attestations = set()
        self.ops = OpSet(lambda op: Timestamp(op(msg)))

    def __eq__(self, other):
        if isinstance(other, Timestamp):
            return (self.__msg == other.__msg and
                    self.attestations == other.attestations and
                    dict(self.ops) == dict(other.ops))
        else:
            return False

    def __repr__(self):
        return 'Timestamp(<%s>)' % binascii.hexlify(self.__msg).decode('utf8')

    def merge(self, other):
        """Add all operations and attestations from another timestamp to this one

        Raises ValueError if the other timestamp isn't for the same message
        """
        if not isinstance(other, Timestamp):
            raise TypeError("Can only merge Timestamps together")

        if self.__msg != other.__msg:
            raise ValueError("Can't merge timestamps for different messages together")

        self.attestations.update(other.attestations)

        for other_op, other_op_stamp in other.ops.items():
            our_op_stamp = self.ops.add(other_op)
            our_op_stamp.merge(other_op_stamp)

    @classmethod
    def merge_all(cls, msg, fragments):
        """Build a single proof for msg from independently obtained fragments

        Each fragment becomes a branch of the returned root, in the order
        given. Fragments that start with the same operation share that edge.
        """
        root = cls(msg)
        for fragment in fragments:
            root.merge(fragment)
        return root

    def __len__(self):
        """Number of branches leaving this node"""
        return len(self.attestations) + len(self.ops)

    def serialize(self, ctx):
        if not len(self.attestations) and not len(self.ops):
            raise ValueError("An empty timestamp can't be serialized")

        sorted_attestations = sorted(self.attestations)
        if len(sorted_attestations) > 1:
            for attestation in sorted_attestations[0:-1]:
                ctx.write_bytes(b'\xff\x00')
                attestation.serialize(ctx)

        if len(self.ops) == 0:
            ctx.write_bytes(b'\x00')
            sorted_attestations[-1].serialize(ctx)

        elif len(self.ops) > 0:
            if len(sorted_attestations) > 0:
                ctx.write_bytes(b'\xff\x00')
                sorted_attestations[-1].serialize(ctx)

            sorted_ops = sorted(self.ops.items(), key=lambda item: item[0])
            for op, stamp in sorted_ops[0:-1]:
                ctx.write_bytes(b'\xff')
                op.serialize(ctx)
                stamp.serialize(ctx)

            last_op, last_stamp = sorted_ops[-1]
            last_op.serialize(ctx)
            last_stamp.serialize(ctx)

    @classmethod
    def deserialize(cls, ctx, initial_msg, _recursion_limit=256):
        """Deserialize

        Because the serialization format doesn't include the message that the
        timestamp operates on, you have to provide it so that the correct
        operation results can be calculated.

        The message you provide is assumed to be correct; if it causes a op to
        raise MsgValueError when the results are being calculated (done
        immediately, not lazily) DeserializationError is raised instead.
        """
        if not _recursion_limit:
            raise proofengine.core.serialize.RecursionLimitError("Reached timestamp recursion depth limit while deserializing")

        self = cls(initial_msg)

        def do_tag_or_attestation(tag):
            if tag == b'\x00':
                attestation = TimeAttestation.deserialize(ctx)
                self.attestations.add(attestation)

            else:
                op = Op.deserialize_from_tag(ctx, tag)

                try:
                    result = op(initial_msg)
                except MsgValueError as exp:
                    raise proofengine.core.serialize.DeserializationError("Invalid timestamp; message invalid for op %r: %r" % (op, exp))

                stamp = Timestamp.deserialize(ctx, result, _recursion_limit=_recursion_limit-1)
                self.ops[op] = stamp

        tag = ctx.read_bytes(1)
        while tag == b'\xff':
            do_tag_or_attestation(ctx.read_bytes(1))

            tag = ctx.read_bytes(1)

        do_tag_or_attestation(tag)

        return self

    def all_attestations(self):
        """Iterate over all attestations recursively

        Returns iterable of (msg, attestation)
        """
        for attestation in self.attestations:
            yield (self.msg, attestation)

        for op_stamp in self.ops.values():
            yield from op_stamp.all_attestations()

    def evaluate(self, start_msg=None):
        """Recompute the value committed by every attestation

        Every operation on every root-to-leaf path is applied afresh, starting
        from start_msg (default: this node's message), rather than trusting
        the messages cached in the tree. At a fork each branch is evaluated
        from the same intermediate value.

        Returns a list of (final_value, attestation) pairs, one per leaf, in
        serialization order.
        """
        if start_msg is None:
            start_msg = self.msg

        results = [(start_msg, attestation) for attestation in sorted(self.attestations)]
        for op, stamp in sorted(self.ops.items(), key=lambda item: item[0]):
            results.extend(stamp.evaluate(op(start_msg)))
        return results

    def pending_branches(self, _path=()):
        """Find every pending attestation in the tree

        Returns a list of (path, attestation) pairs, where path is the tuple of
        operations leading from this node to the node holding the attestation.
        """
        r = [(_path, attestation) for attestation in sorted(self.attestations)
                                  if isinstance(attestation, PendingAttestation)]
        for op, stamp in sorted(self.ops.items(), key=lambda item: item[0]):
            r.extend(stamp.pending_branches(_path + (op,)))
        return r

    def walk(self, path):
        """Return the node at path

        Raises KeyError if there's no such node.
        """
        stamp = self
        for op in path:
            stamp = stamp.ops[op]
        return stamp

    def replace_branch(self, path, new_stamp, attestation=None):
        """Replace a pending leaf with the subtree that resolved it

        The node at path has attestation (normally the PendingAttestation that
        new_stamp came from) removed, and new_stamp merged in its place. Only
        structural consistency is checked here: new_stamp must be for the
        message at that node.

        Returns the node at path.
        """
        stamp = self.walk(path)

        if new_stamp.msg != stamp.msg:
            raise ValueError("Replacement timestamp is for a different message")

        if attestation is not None:
            stamp.attestations.discard(attestation)
        stamp.merge(new_stamp)
        return stamp

    def str_tree(self, indent=0, verbosity=0):
        """Convert to tree (for debugging)"""

        def str_result(result):
            if verbosity > 0 and result is not None:
                return " == " + binascii.hexlify(result).decode('utf8')
            else:
                return ""

        r = ""
        for attestation in sorted(self.attestations):
            r += " "*indent + "verify %s" % str(attestation) + "\n"
            if attestation.__class__ == BitcoinBlockHeaderAttestation:
                r += " "*indent + "# Bitcoin block merkle root " + binascii.hexlify(self.msg[::-1]).decode('utf8') + "\n"

        sorted_ops = sorted(self.ops.items(), key=lambda item: item[0])
        if len(sorted_ops) > 1:
            for op, stamp in sorted_ops:
                r += " "*indent + " -> " + "%s" % str(op) + str_result(stamp.msg) + "\n"
                r += stamp.str_tree(indent+4, verbosity=verbosity)

        elif len(sorted_ops) > 0:
            op, stamp = sorted_ops[0]
            r += " "*indent + "%s" % str(op) + str_result(stamp.msg) + "\n"
            r += stamp.str_tree(indent, verbosity=verbosity)

        return r
