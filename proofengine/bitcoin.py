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

"""Bitcoin attestation verification

A block header provider turns a block height into a block header
(python-bitcoinlib's CBlockHeader, or anything with hashMerkleRoot and nTime
attributes). get_block_header() raises KeyError if the height isn't known,
and OSError (ConnectionError etc.) if the provider can't be reached.
"""

import enum
import logging
import socket
import threading
import time
import urllib.error
import urllib.request
from ipaddress import IPv6Address

import bitcoin.rpc
from bitcoin.core import b2x, b2lx, x, CBlockHeader
from bitcoin.core.serialize import SerializationError

from proofengine.core.notary import (PendingAttestation, BitcoinBlockHeaderAttestation,
                                     VerificationError, MerkleMismatchError,
                                     BlockNotFoundError, ProviderUnavailableError)


class BlockHeaderProvider:
    """Source of Bitcoin block headers by height"""

    def get_block_header(self, height):
        raise NotImplementedError


class BitcoinCoreBlockHeaderProvider(BlockHeaderProvider):
    """Block headers from a Bitcoin Core node over JSON-RPC

    The RPC connection is only set up when the first header is asked for, so
    stamping and upgrading work on machines without a bitcoin.conf.
    """

    def __init__(self, proxy=None, service_url=None):
        self.service_url = service_url
        self._proxy = proxy
        self._proxy_lock = threading.Lock()

    @property
    def proxy(self):
        with self._proxy_lock:
            if self._proxy is None:
                try:
                    self._proxy = bitcoin.rpc.Proxy(service_url=self.service_url)
                except (OSError, ValueError) as exp:
                    raise ConnectionError("Could not connect to Bitcoin node: %s" % exp)
            return self._proxy

    def get_block_header(self, height):
        try:
            blockhash = self.proxy.getblockhash(height)
            logging.debug("Attestation block hash: %s" % b2lx(blockhash))
            return self.proxy.getblockheader(blockhash)
        except IndexError:
            raise KeyError("Bitcoin block height %d not found" % height)
        except bitcoin.rpc.JSONRPCError as exp:
            raise ConnectionError("Bitcoin node error: %s" % exp)


class EsploraBlockHeaderProvider(BlockHeaderProvider):
    """Block headers from an Esplora HTTP API, such as blockstream.info"""

    DEFAULT_URL = 'https://blockstream.info/api'

    def __init__(self, url=DEFAULT_URL, timeout=15):
        self.url = url.rstrip('/')
        self.timeout = timeout

    def _get(self, path):
        try:
            with urllib.request.urlopen(self.url + path, timeout=self.timeout) as resp:
                body = resp.read(1000)
        except urllib.error.HTTPError as exp:
            if exp.code in (400, 404):
                raise KeyError(path)
            raise ConnectionError("Esplora %s returned HTTP %d" % (self.url, exp.code))

        try:
            return body.decode('utf8').strip()
        except UnicodeDecodeError as exp:
            raise ConnectionError("Malformed response from %s: %s" % (self.url, exp))

    def get_block_header(self, height):
        try:
            blockhash = self._get('/block-height/%d' % height)
        except KeyError:
            raise KeyError("Bitcoin block height %d not found" % height)

        logging.debug("Attestation block hash: %s" % blockhash)
        header_hex = self._get('/block/%s/header' % blockhash)
        try:
            return CBlockHeader.deserialize(x(header_hex))
        except (ValueError, SerializationError) as exp:
            raise ConnectionError("Malformed block header from %s: %s" % (self.url, exp))


class DnsBlockHeaderProvider(BlockHeaderProvider):
    """Block headers published as DNS AAAA records

    Each header is split into nibble chunks, stored in the low bytes of
    2001::/16 addresses under <height>.<height/10000>.<domain>.
    """

    def __init__(self, domain):
        self.domain = domain

    def get_block_header(self, height):
        domain = '%d.%d.%s' % (height, height // 10000, self.domain)

        logging.debug("Getting block header %d from %s" % (height, domain))

        try:
            addrinfo = socket.getaddrinfo(domain, None, family=socket.AF_INET6, type=socket.SOCK_DGRAM)
        except socket.gaierror as exp:
            if exp.errno == socket.EAI_NONAME:
                raise KeyError("Bitcoin block height %d not found" % height)
            raise ConnectionError("DNS lookup of %s failed: %s" % (domain, exp))

        nibble_chunks = []
        for (_family, _type, _port, _name, (addr, _, _, _)) in addrinfo:
            addr_bytes = IPv6Address(addr).packed

            if addr_bytes[0:2] != b'\x20\x01':
                continue

            idx = addr_bytes[2] >> 4

            nibble_chunks.append((idx, b2x(addr_bytes[2:])[1:]))

        header_nibbles = ''
        for (_n, chunk) in sorted(nibble_chunks):
            header_nibbles += chunk

        try:
            header_bytes = x(header_nibbles)
            if not header_bytes or header_bytes[0] != 0:
                raise ValueError("bad version byte")
            return CBlockHeader.deserialize(header_bytes[1:81])
        except (ValueError, SerializationError) as exp:
            raise ConnectionError("Malformed block header records at %s: %s" % (domain, exp))


class Verdict(enum.Enum):
    VERIFIED = 'verified'
    PENDING = 'pending'
    FAILED = 'failed'


class FailureReason(enum.Enum):
    MERKLE_MISMATCH = 'digest does not match the block merkle root'
    BLOCK_NOT_FOUND = 'attested block not found'
    PROVIDER_UNAVAILABLE = 'block header provider unavailable'
    NO_ATTESTATIONS = 'no verifiable attestations'
    DIGEST_MISMATCH = 'content does not match the timestamped digest'
    ALL_SERVERS_UNREACHABLE = 'no calendar server responded'
    INSUFFICIENT_CALENDARS = 'too few calendar servers responded'


REASON_BY_ERROR = {
    MerkleMismatchError: FailureReason.MERKLE_MISMATCH,
    BlockNotFoundError: FailureReason.BLOCK_NOT_FOUND,
    ProviderUnavailableError: FailureReason.PROVIDER_UNAVAILABLE,
}


class VerificationResult:
    """Outcome of verifying an attestation, or a whole proof"""

    def __init__(self, verdict, reason=None, height=None, attested_time=None, message=None, failures=()):
        self.verdict = verdict
        self.reason = reason
        self.height = height
        self.attested_time = attested_time
        self.message = message

        # Failed Bitcoin leaves, when this is the result for a whole proof
        self.failures = list(failures)

    @classmethod
    def from_error(cls, error, height=None):
        return cls(Verdict.FAILED, REASON_BY_ERROR[error.__class__], height=height, message=str(error))

    def __bool__(self):
        return self.verdict is Verdict.VERIFIED

    def __repr__(self):
        return 'VerificationResult(%s, %r, height=%r)' % (self.verdict.name, self.reason, self.height)

    def __str__(self):
        if self.verdict is Verdict.VERIFIED:
            return "Bitcoin block %d attests data existed as of %s" % \
                    (self.height, time.strftime('%c %Z', time.localtime(self.attested_time)))
        elif self.verdict is Verdict.PENDING:
            return "Pending confirmation in Bitcoin blockchain"
        elif self.message:
            return "%s: %s" % (self.reason.value, self.message)
        else:
            return self.reason.value


class AttestationVerifier:
    """Decides whether a proof actually holds

    Nothing is reported as verified without the committed digest having been
    compared against a block header fetched from the provider.
    """

    def __init__(self, provider):
        self.provider = provider

    def fetch_block_header(self, height):
        """Get the header at height, translating provider failures

        Raises BlockNotFoundError or ProviderUnavailableError.
        """
        if self.provider is None:
            raise ProviderUnavailableError("No block header provider configured")

        try:
            return self.provider.get_block_header(height)
        except KeyError as exp:
            raise BlockNotFoundError("Bitcoin block height %d not found: %s" % (height, exp))
        except OSError as exp:
            raise ProviderUnavailableError("Could not get block %d: %s" % (height, exp))

    def verify_bitcoin_attestation(self, committed_value, height):
        """Check committed_value against the merkle root of block height"""
        attestation = BitcoinBlockHeaderAttestation(height)
        try:
            block_header = self.fetch_block_header(height)
            attested_time = attestation.verify_against_blockheader(committed_value, block_header)
        except VerificationError as err:
            logging.debug("Bitcoin verification of block %d failed: %s" % (height, err))
            return VerificationResult.from_error(err, height=height)

        return VerificationResult(Verdict.VERIFIED, height=height, attested_time=attested_time)

    def verify_timestamp(self, timestamp):
        """Verify every leaf of a proof tree

        The tree is re-evaluated from its root message first, so cached
        messages inside it aren't trusted. Verified if at least one Bitcoin
        attestation checks out; otherwise pending if any leaf is still pending;
        otherwise failed.
        """
        leaves = timestamp.evaluate()

        pending = False
        bitcoin_leaves = []
        for msg, attestation in leaves:
            if attestation.__class__ == PendingAttestation:
                pending = True
            elif attestation.__class__ == BitcoinBlockHeaderAttestation:
                bitcoin_leaves.append((attestation.height, msg))
            else:
                logging.debug("Can't verify %r; skipping" % attestation)

        failures = []
        # Lowest block first: the earliest attestation is the strongest claim,
        # and one Bitcoin attestation is enough.
        for height, msg in sorted(bitcoin_leaves):
            result = self.verify_bitcoin_attestation(msg, height)
            if result.verdict is Verdict.VERIFIED:
                return result
            failures.append(result)

        if pending:
            return VerificationResult(Verdict.PENDING, failures=failures)
        elif failures:
            first = failures[0]
            return VerificationResult(Verdict.FAILED, first.reason, height=first.height,
                                      message=first.message, failures=failures)
        else:
            return VerificationResult(Verdict.FAILED, FailureReason.NO_ATTESTATIONS)

    def verify_record(self, record):
        return self.verify_timestamp(record.timestamp)
