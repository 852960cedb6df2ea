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

import argparse
import logging
import os
import socket
import sys

import appdirs
import bitcoin

import proofengine
import proofengine.bitcoin
import proofengine.cache
import proofengine.calendar
import proofengine.cmds
import proofengine.engine


def make_common_options_arg_parser():
    parser = argparse.ArgumentParser(description="OpenTimestamps proof engine.")
    parser.add_argument('--version', action='version', version='v%s' % proofengine.__version__)

    parser.add_argument("-q", "--quiet", action="count", default=0,
                        help="Be more quiet.")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Be more verbose. Both -v and -q may be used multiple times.")

    whitelist_group  = parser.add_mutually_exclusive_group()
    whitelist_group.add_argument('-l', '--whitelist', metavar='URL', action='append', type=str,
                                 default=[],
                                 help='Whitelist a remote calendar. If no whitelist is specified, %s is whitelisted by default.' % proofengine.engine.DEFAULT_WHITELIST)
    whitelist_group.add_argument('--no-remote-calendars', dest='whitelist', action='store_const',
                                 const=None,
                                 default=[],
                                 help='Prevent any remote calendar from being contacted.')

    cache_group  = parser.add_mutually_exclusive_group()
    cache_group.add_argument("--cache", action="store", type=str,
                             dest='cache_path',
                             default=appdirs.user_cache_dir('ots-engine'),
                             help="Location of the timestamp cache. Default: %(default)s")
    cache_group.add_argument("--no-cache", action="store_const", const=None,
                             dest='cache_path',
                             help="Disable the timestamp cache")

    btc_net_group  = parser.add_mutually_exclusive_group()
    btc_net_group.add_argument('--btc-testnet', dest='btc_net', action='store_const',
                               const='testnet', default='mainnet',
                               help='Use Bitcoin testnet rather than mainnet')
    btc_net_group.add_argument('--btc-regtest', dest='btc_net', action='store_const',
                               const='regtest',
                               help='Use Bitcoin regtest rather than mainnet')
    btc_net_group.add_argument('--no-bitcoin', dest='use_bitcoin', action='store_false',
                               default=True,
                               help='Disable Bitcoin entirely')

    provider_group = parser.add_mutually_exclusive_group()
    provider_group.add_argument("--bitcoin-node", dest="bitcoin_node", type=str,
                                help="Bitcoin node URL to get block headers from (defaults to local "
                                     "configuration)")
    provider_group.add_argument("--esplora", dest="esplora_url", type=str, nargs='?',
                                const=proofengine.bitcoin.EsploraBlockHeaderProvider.DEFAULT_URL,
                                help="Get block headers from an Esplora block explorer API instead "
                                     "of a Bitcoin node. Default URL: %(const)s")
    provider_group.add_argument("--dns-headers", dest="dns_domain", type=str, metavar="DOMAIN",
                                help="Get block headers from DNS AAAA records published under DOMAIN "
                                     "instead of a Bitcoin node")

    parser.add_argument("--timeout", type=int, default=proofengine.calendar.DEFAULT_TIMEOUT,
                        help="Timeout before giving up on a calendar. "
                             "Default: %(default)d")

    parser.add_argument("-w", "--wait", action="store_true", default=False,
                        help="When creating or upgrading timestamps, wait until "
                             "a complete timestamp committed in the Bitcoin "
                             "blockchain is available instead of returning "
                             "immediately.")
    parser.add_argument("--wait-interval", action="store", type=int, default=30,
                        help=argparse.SUPPRESS) # best if users don't change this and DoS attack the calendars...

    parser.add_argument("--socks5-proxy", type=str,
                        help="Route all traffic through a socks5 proxy, "
                              "including DNS queries. The default port is 1080. "
                              "Format: domain[:port] (e.g. localhost:9050)")

    return parser

def handle_common_options(args, parser):
    args.parser = parser
    args.verbosity = args.verbose - args.quiet

    if args.cache_path is not None:
        args.cache_path = os.path.normpath(os.path.expanduser(args.cache_path))
    args.cache = proofengine.cache.TimestampCache(args.cache_path)

    if args.whitelist is None:
        args.whitelist = proofengine.calendar.UrlWhitelist()

    else:
        whitelist = proofengine.calendar.UrlWhitelist(args.whitelist or proofengine.engine.DEFAULT_WHITELIST)
        for url in getattr(args, 'calendar_urls', None) or []:
            whitelist.add(url)
        args.whitelist = whitelist

    if args.socks5_proxy is not None:
        try:
            import socks
        except ImportError as exp:
            logging.error("Can not use SOCKS5 proxy: %s" % exp)
            sys.exit(1)

        e = args.socks5_proxy.split(':')
        s5_hostname = e[0]
        if len(e) > 1:
            if e[1].isdigit():
                s5_port = int(e[1])
            else:
                args.parser.error("SOCKS5 proxy port must be an integer; got %s" % e[1])
        else:
            s5_port = 1080

        socks.set_default_proxy(socks.SOCKS5,
                                s5_hostname,
                                s5_port)

        # Monkey patch socket to use SOCKS5 proxy
        socket.socket = socks.socksocket

        # This should prevent DNS leaks
        def create_connection(address, timeout=None, source_address=None):
            sock = socks.socksocket()
            sock.connect(address)
            return sock
        socket.create_connection = create_connection

    def setup_provider():
        """Setup the Bitcoin block header provider

        Returns None if Bitcoin is disabled.
        """
        if not args.use_bitcoin:
            return None

        bitcoin.SelectParams(args.btc_net)

        if args.esplora_url is not None:
            if args.btc_net != 'mainnet':
                args.parser.error("--esplora only supports mainnet")
            return proofengine.bitcoin.EsploraBlockHeaderProvider(args.esplora_url, timeout=args.timeout)

        if args.dns_domain is not None:
            return proofengine.bitcoin.DnsBlockHeaderProvider(args.dns_domain)

        # Connects on first use; a missing node only matters for verification
        return proofengine.bitcoin.BitcoinCoreBlockHeaderProvider(service_url=args.bitcoin_node)

    def setup_engine():
        calendar_urls = getattr(args, 'calendar_urls', None) or proofengine.engine.DEFAULT_CALENDAR_URLS
        m = getattr(args, 'm', 1)
        try:
            return proofengine.engine.ProofEngine(calendar_urls=calendar_urls,
                                                  provider=setup_provider(),
                                                  timeout=args.timeout,
                                                  m=m,
                                                  whitelist=args.whitelist,
                                                  cache=args.cache)
        except ValueError as exp:
            args.parser.error(str(exp))

    args.setup_engine = setup_engine

    return args

def parse_ots_args(raw_args):
    parser = make_common_options_arg_parser()

    subparsers = parser.add_subparsers(title='Subcommands',
                                       description='All operations are done through subcommands:')

    # ----- stamp -----
    parser_stamp = subparsers.add_parser('stamp', aliases=['s'],
                                         help='Timestamp files')

    parser_stamp.add_argument('-c', '--calendar', metavar='URL', dest='calendar_urls', action='append', type=str,
                              default=[],
                              help='Create timestamp with the aid of a remote calendar. May be specified multiple times.')

    parser_stamp.add_argument('files', metavar='FILE', type=argparse.FileType('rb'),
                              nargs='+',
                              help='Filename')

    parser_stamp.add_argument("-m", type=int, default=1,
                              help="Commitments are sent to remote calendars; "
                                   "the timestamp is only created if at least "
                                   "M calendars replied before the timeout. "
                                   "Default: %(default)s")

    # ----- upgrade -----
    parser_upgrade = subparsers.add_parser('upgrade', aliases=['u'],
                                           help='Upgrade remote calendar timestamps to be locally verifiable')
    parser_upgrade.add_argument('-n', '--dry-run', action='store_true', default=False,
                                help='Perform a trial upgrade without modifying the existing timestamp.')
    parser_upgrade.add_argument('files', metavar='FILE', type=argparse.FileType('rb'),
                                nargs='+',
                                help='Existing timestamp(s); moved to FILE.bak')

    # ----- verify -----
    parser_verify = subparsers.add_parser('verify', aliases=['v'],
                                          help="Verify a timestamp")

    verify_target_group = parser_verify.add_mutually_exclusive_group()
    verify_target_group.add_argument('-f', metavar='FILE', dest='target_fd', type=argparse.FileType('rb'),
                                     default=None,
                                     help='Specify target file explicitly')
    verify_target_group.add_argument('-d', metavar='DIGEST', dest='hex_digest', type=str,
                                     default=None,
                                     help='Verify a (hex-encoded) digest rather than a file')

    parser_verify.add_argument('timestamp_fd', metavar='TIMESTAMP', type=argparse.FileType('rb'),
                               help='Timestamp filename')

    # ----- info -----
    parser_info = subparsers.add_parser('info', aliases=['i'],
                                        help='Show information on a timestamp')
    parser_info.add_argument('file', metavar='FILE', type=argparse.FileType('rb'),
                             help='Filename')

    parser_stamp.set_defaults(cmd_func=proofengine.cmds.stamp_command)
    parser_upgrade.set_defaults(cmd_func=proofengine.cmds.upgrade_command)
    parser_verify.set_defaults(cmd_func=proofengine.cmds.verify_command)
    parser_info.set_defaults(cmd_func=proofengine.cmds.info_command)

    args = parser.parse_args(raw_args)
    args = handle_common_options(args, parser)

    return args
