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
import logging
import os
import sys
import time

from bitcoin.core import b2x

from proofengine.bitcoin import Verdict
from proofengine.core.serialize import (StreamSerializationContext, StreamDeserializationContext,
                                        BadMagicError, DeserializationError)
from proofengine.record import ProofRecord, ProofStatus

COMPLETE_STATUSES = (ProofStatus.CONFIRMED, ProofStatus.VERIFIED, ProofStatus.FAILED)


def read_record(fd):
    """Read a proof file, exiting on error"""
    ctx = StreamDeserializationContext(fd)
    try:
        return ProofRecord.deserialize(ctx)
    except BadMagicError:
        logging.error("Error! %r is not a timestamp file." % fd.name)
        sys.exit(1)
    except DeserializationError as exp:
        logging.error("Invalid timestamp file %r: %s" % (fd.name, exp))
        sys.exit(1)


def upgrade_until_complete(engine, record, args):
    """Upgrade a record, waiting for completion if args.wait is set"""
    changed = engine.upgrade(record)
    while args.wait and record.status not in COMPLETE_STATUSES:
        logging.info("Timestamp not complete; waiting %d sec before trying again" % args.wait_interval)
        time.sleep(args.wait_interval)
        changed |= engine.upgrade(record)
    return changed


def stamp_command(args):
    engine = args.setup_engine()

    for fd in args.files:
        try:
            record = engine.create_from_fd(fd)
        except OSError as exp:
            logging.error("Could not read %r: %s" % (fd.name, exp))
            sys.exit(1)

        engine.submit(record)
        if record.status is ProofStatus.FAILED:
            logging.error("Failed to create timestamp for %r: %s" % (fd.name, record.failure_reason.value))
            sys.exit(1)

        if args.wait:
            upgrade_until_complete(engine, record, args)
            logging.info("Timestamp complete; saving")

        timestamp_file_path = fd.name + '.ots'
        try:
            with open(timestamp_file_path, 'xb') as timestamp_fd:
                ctx = StreamSerializationContext(timestamp_fd)
                record.serialize(ctx)
        except IOError as exp:
            logging.error("Failed to create timestamp %r: %s" % (timestamp_file_path, exp))
            sys.exit(1)


def upgrade_command(args):
    engine = args.setup_engine()

    for old_stamp_fd in args.files:
        logging.debug("Upgrading %s" % old_stamp_fd.name)

        record = read_record(old_stamp_fd)
        old_stamp_fd.close()

        changed = upgrade_until_complete(engine, record, args)

        if changed and not args.dry_run:
            backup_name = old_stamp_fd.name + '.bak'
            logging.debug("Got new timestamp data; renaming existing timestamp to %r" % backup_name)

            if os.path.exists(backup_name):
                logging.error("Could not backup timestamp: %r already exists" % backup_name)
                sys.exit(1)

            try:
                os.rename(old_stamp_fd.name, backup_name)
            except IOError as exp:
                logging.error("Could not backup timestamp: %s" % exp)
                sys.exit(1)

            try:
                with open(old_stamp_fd.name, 'xb') as new_stamp_fd:
                    ctx = StreamSerializationContext(new_stamp_fd)
                    record.serialize(ctx)
            except IOError as exp:
                logging.error("Could not upgrade timestamp %s: %s" % (old_stamp_fd.name, exp))
                sys.exit(1)

        if record.status is ProofStatus.VERIFIED:
            logging.info("Success! Timestamp complete")
        elif record.status is ProofStatus.CONFIRMED:
            logging.info("Timestamp complete, but its Bitcoin attestation hasn't been checked")
        else:
            logging.warning("Failed! Timestamp not complete")
            sys.exit(1)


def verify_command(args):
    engine = args.setup_engine()
    record = read_record(args.timestamp_fd)

    content = None
    if args.hex_digest is not None:
        try:
            digest = binascii.unhexlify(args.hex_digest.encode('utf8'))
        except ValueError:
            args.parser.error('Digest must be hexadecimal')

        if not digest == record.digest:
            logging.error("Digest provided does not match digest in timestamp, %s (%s)" %
                          (b2x(record.digest), record.file_hash_op.TAG_NAME))
            sys.exit(1)

    else:
        if args.target_fd is None:
            # Target not specified, so assume it's the same name as the
            # timestamp file minus the .ots extension.
            if not args.timestamp_fd.name.endswith('.ots'):
                args.parser.error('Timestamp filename does not end in .ots')

            target_filename = args.timestamp_fd.name[:-4]
            logging.info("Assuming target filename is %r" % target_filename)

            try:
                args.target_fd = open(target_filename, 'rb')
            except IOError as exp:
                logging.error('Could not open target: %s' % exp)
                sys.exit(1)

        logging.debug("Hashing file, algorithm %s" % record.file_hash_op.TAG_NAME)
        with args.target_fd:
            content = args.target_fd.read()

    # Pending branches may have been resolved since the file was written; the
    # file itself is left as-is.
    if record.status is ProofStatus.SUBMITTED:
        engine.upgrade(record)

    result = engine.verify(record, content=content)
    if result.verdict is Verdict.VERIFIED:
        logging.info("Success! %s" % result)
    elif result.verdict is Verdict.PENDING:
        logging.warning("Timestamp not yet verifiable: %s" % result)
        sys.exit(1)
    else:
        logging.error("Verification failed: %s" % result)
        sys.exit(1)


def info_command(args):
    record = read_record(args.file)

    print("File %s hash: %s" % (record.file_hash_op.TAG_NAME, binascii.hexlify(record.digest).decode('utf8')))
    print("Status: %s" % record.status.value)

    print("Timestamp:")
    print(record.timestamp.str_tree(verbosity=args.verbosity))
