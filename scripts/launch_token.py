#!/usr/bin/env python3
"""
Launchpad token issuance

- Optionally pins an image plus metadata JSON to Pinata (--image/--description) to get the URI.
- Creates a Token-2022 mint with inline metadata, the issuer's associated token account,
  and mints the initial supply into it, printing each step as it confirms.
- --resume-mint finishes an earlier attempt whose mint transaction already confirmed.

Default cluster: devnet (override with SOLANA_RPC / HELIUS_RPC_URL).
"""

from __future__ import annotations

import argparse
import logging
import mimetypes
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "backend"))

from content_store import PinataContentStore  # noqa: E402
from errors import ContentStoreError, IssuanceError  # noqa: E402
from issuer import TokenIssuer  # noqa: E402
from metadata_codec import FieldLimits  # noqa: E402
from models import IssuanceState, TokenDescriptor  # noqa: E402
from rpc import KeypairSigner, RpcConnection, load_keypair  # noqa: E402
from settings import get_settings  # noqa: E402
from tx_builder import to_pubkey  # noqa: E402


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Issue a Token-2022 fungible token with metadata")
    parser.add_argument("--name", required=True)
    parser.add_argument("--symbol", required=True)
    parser.add_argument("--decimals", type=int, default=None)
    parser.add_argument("--supply", type=int, required=True, help="initial supply in whole tokens")
    parser.add_argument("--uri", help="metadata document URI; pinned from --image when omitted")
    parser.add_argument("--image", type=Path, help="image file to pin to Pinata")
    parser.add_argument("--description", help="description stored in the metadata document")
    parser.add_argument("--keypair", help="issuer keypair JSON (defaults to ISSUER_KEYPAIR_PATH)")
    parser.add_argument("--resume-mint", help="existing mint address to finish issuing")
    return parser.parse_args(argv)


def resolve_uri(args: argparse.Namespace, settings) -> str:
    if args.uri:
        return args.uri
    if not args.image or not args.description:
        raise SystemExit("Provide --uri, or --image and --description to pin metadata")
    store = PinataContentStore.from_settings(settings)
    content_type = mimetypes.guess_type(args.image.name)[0] or "application/octet-stream"
    uri = store.pin_token_metadata(
        args.name,
        args.symbol,
        args.description,
        args.image.read_bytes(),
        image_filename=args.image.name,
        image_content_type=content_type,
    )
    print(f"📌 Metadata pinned: {uri}")
    return uri


def main(argv=None) -> int:
    logging.basicConfig(level=logging.INFO)
    args = parse_args(argv)
    settings = get_settings()
    keypair_path = args.keypair or settings.issuer_keypair_path
    if not keypair_path:
        print("Missing --keypair or ISSUER_KEYPAIR_PATH", file=sys.stderr)
        return 1
    issuer_kp = load_keypair(keypair_path)
    connection = RpcConnection.from_settings(settings)
    issuer = TokenIssuer(connection, KeypairSigner(issuer_kp, connection), limits=FieldLimits.from_settings(settings))

    try:
        uri = resolve_uri(args, settings)
    except ContentStoreError as exc:
        print(f"❌ Metadata upload failed: {exc}", file=sys.stderr)
        return 1

    descriptor = TokenDescriptor(
        name=args.name,
        symbol=args.symbol,
        decimals=settings.default_decimals if args.decimals is None else args.decimals,
        initial_supply=args.supply,
        uri=uri,
    )
    print(f"👑 Issuer: {issuer_kp.pubkey()}  RPC: {settings.rpc_url}")
    if args.resume_mint:
        entries = issuer.resume_issuance(descriptor, issuer_kp.pubkey(), to_pubkey(args.resume_mint))
    else:
        entries = issuer.issue_token(descriptor, issuer_kp.pubkey())

    last = None
    for entry in entries:
        marker = "❌" if entry.state == IssuanceState.FAILED else "✅"
        ref = f" ({entry.reference})" if entry.reference else ""
        print(f"{marker} [{entry.state.value}] {entry.message}{ref}")
        last = entry
    if last is None or last.state != IssuanceState.DONE:
        try:
            mint = issuer.resumable_mint()
        except IssuanceError as exc:
            mint = issuer.last_result.mint if issuer.last_result else None
            print(f"⚠️  Could not check whether mint {mint} exists: {exc}", file=sys.stderr)
            return 1
        if mint is not None:
            print(f"⚠️  Mint {mint} exists on-chain; finish it with --resume-mint {mint}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
