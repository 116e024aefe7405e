#!/usr/bin/env python3
"""
TokenKV Command Line Interface

Usage:
    tokenkv keygen --output <file> [--key-id <kid>]
    tokenkv identity [--identity <file>]
    tokenkv handle --key <key> --counterparty <hex|self> [--basket <b>] [--protocol <p>]
    tokenkv decode --locking <hex>
    tokenkv lookup --key <key> --counterparty <hex|self> [--host <url>] [--history]
"""

import argparse
import asyncio
import json
import sys

from .codec import TokenCodec
from .config import DEFAULT_BASKET, DIRECTORY_HOST, SELF, StoreConfig
from .directory import HttpDirectoryService
from .errors import DirectoryError
from .index import obfuscate_key
from .keys import LocalKeyProvider, get_key_provider
from .util import b64e


def _config(args) -> StoreConfig:
    return StoreConfig(
        basket=args.basket,
        protocol=args.protocol or "",
        counterparty=args.counterparty,
    )


def cmd_keygen(args):
    """Generate an identity key file."""
    provider = LocalKeyProvider.generate()
    provider.save(args.output, kid=args.key_id)
    print(f"Wrote identity key to {args.output}")
    print(f"Identity: {provider.identity_hex}")


def cmd_identity(args):
    """Print the public identity key."""
    provider = get_key_provider(args.identity)
    print(asyncio.run(provider.identity_key()))


def cmd_handle(args):
    """Print the directory lookup handle for a key."""
    cfg = _config(args)
    provider = get_key_provider(args.identity)
    print(asyncio.run(obfuscate_key(provider, cfg.protocol_id, args.key, cfg.lookup_counterparty)))


def cmd_decode(args):
    """Decode a locking condition given as hex."""
    try:
        locking = bytes.fromhex(args.locking)
    except ValueError:
        print("locking must be hex", file=sys.stderr)
        return 2
    result = TokenCodec.decode(locking)
    if not result.ok:
        print(f"Not a token: {result.reason}", file=sys.stderr)
        return 1
    print(json.dumps({
        "owner": result.token.owning_key,
        "fields": [b64e(f) for f in result.token.fields],
        "signature": b64e(result.token.signature),
    }, indent=2))
    return 0


def cmd_lookup(args):
    """List the tokens a directory holds for a key."""
    cfg = _config(args)
    provider = get_key_provider(args.identity)
    directory = HttpDirectoryService(args.host)

    async def run():
        handle = await obfuscate_key(provider, cfg.protocol_id, args.key, cfg.lookup_counterparty)
        return await directory.lookup(handle, history=args.history)

    try:
        results = asyncio.run(run())
    except DirectoryError as e:
        print(f"Lookup failed: {e}", file=sys.stderr)
        return 1
    for r in results:
        print(f"{r.outpoint}  {r.satoshis}")
    print(f"{len(results)} token(s)")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="tokenkv",
        description="TokenKV - key-value storage over signed ledger tokens"
    )
    parser.add_argument("-i", "--identity", help="Identity key file (default: TOKENKV_IDENTITY_KEY_PATH)")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # keygen
    keygen_parser = subparsers.add_parser("keygen", help="Generate an identity key")
    keygen_parser.add_argument("-o", "--output", required=True, help="Output key file")
    keygen_parser.add_argument("-k", "--key-id", default="tokenkv-identity-01", help="Key identifier")

    # identity
    subparsers.add_parser("identity", help="Print the public identity key")

    # handle / lookup share the key-slot arguments
    for name, help_text in (("handle", "Print the lookup handle for a key"),
                            ("lookup", "Query a directory for a key")):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("-k", "--key", required=True, help="Key")
        p.add_argument("-c", "--counterparty", default=SELF, help="Counterparty identity hex, or 'self'")
        p.add_argument("-b", "--basket", default=DEFAULT_BASKET, help="Basket")
        p.add_argument("-p", "--protocol", help="Protocol name (default: basket)")
        if name == "lookup":
            p.add_argument("--host", default=DIRECTORY_HOST, help="Directory URL")
            p.add_argument("--history", action="store_true", help="Include full ancestry")

    # decode
    decode_parser = subparsers.add_parser("decode", help="Decode a locking condition")
    decode_parser.add_argument("-l", "--locking", required=True, help="Locking condition hex")

    args = parser.parse_args(argv)

    if args.command == "keygen":
        cmd_keygen(args)
    elif args.command == "identity":
        cmd_identity(args)
    elif args.command == "handle":
        cmd_handle(args)
    elif args.command == "decode":
        return cmd_decode(args)
    elif args.command == "lookup":
        return cmd_lookup(args)
    else:
        parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
