"""
MatchProof Command Line

Commands:
- canonicalize: Print the canonical form (and hash) of a JSON file
- verify: Verify a match record against its on-chain anchor
- upload: Store a match record and anchor it
- flush: Close the pending batch
- keygen: Generate an Ed25519 keypair
- sign: Add a player signature to a match record

Backends come from the environment (see matchproof.config). --storage and
--ledger point the command at a local directory and ledger file instead,
which is what makes upload, flush and verify work across invocations.

Usage:
    matchproof canonicalize match.json
    matchproof upload --file match.json --anchor direct --storage ./data/objects --ledger ./data/ledger.jsonl
    matchproof verify 6f1c... --storage ./data/objects --ledger ./data/ledger.jsonl

Exit codes (verify):
    0 - VALID: All checks passed
    1 - INVALID: The record does not match its anchor (or another check failed)
    2 - ERROR: The record could not be loaded or checked at all
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from .config import (
    LedgerConfig,
    LedgerDriver,
    StorageConfig,
    StorageDriver,
    create_ledger_client,
    create_object_store,
)
from .core import Hasher, KeyManager, Signer, canonicalize, canonicalize_to_str
from .errors import MatchProofError
from .observability import get_logger, get_metrics, setup_logging
from .schemas import MatchRecord, VerificationResult
from .services import AnchorMode, Services, create_services, upload_match

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_ERROR = 2


# ============================================================
# Helpers
# ============================================================

def _error(message: str) -> int:
    print(f"ERROR: {message}", file=sys.stderr)
    return EXIT_ERROR


def _load_json(path: str) -> Any:
    """
    Read a JSON document from a file ("-" for stdin).

    Raises:
        OSError: The file cannot be read
        json.JSONDecodeError: The file is not JSON
    """
    if path == "-":
        return json.load(sys.stdin)
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _write_output(data: bytes, output: Optional[str]) -> None:
    if output:
        Path(output).write_bytes(data)
    else:
        sys.stdout.write(data.decode("utf-8") + "\n")


def _build_services(args) -> Services:
    """Wire the pipeline, with --storage/--ledger overriding the environment."""
    storage_config = StorageConfig.from_env()
    if getattr(args, "storage", None):
        storage_config.driver = StorageDriver.LOCAL
        storage_config.path = args.storage

    ledger_config = LedgerConfig.from_env()
    if getattr(args, "ledger", None):
        ledger_config.driver = LedgerDriver.LOCAL
        ledger_config.path = args.ledger

    return create_services(
        store=create_object_store(storage_config),
        ledger=create_ledger_client(ledger_config),
    )


def print_report(result: VerificationResult, json_output: bool = False) -> None:
    """Print a verification report."""
    if json_output:
        print(json.dumps(result.model_dump(), indent=2))
        return

    print("\n" + "=" * 60)
    if result.is_valid:
        print("  [VALID] - Match record matches its anchor")
    else:
        print("  [INVALID] - Verification failed")
    print("=" * 60)

    print(f"\nMatch ID:      {result.match_id}")
    print(f"Computed hash: {result.computed_hash}")
    if result.on_chain_hash:
        print(f"On-chain:      {result.on_chain_hash}")
    if result.batch_id:
        print(f"Batch:         {result.batch_id}")
    if result.anchor_transaction:
        print(f"Transaction:   {result.anchor_transaction}")

    checks = [
        ("Merkle proof", result.merkle_verified),
        ("Signatures", result.signatures_verified),
        ("Replay", result.replay_verified),
    ]
    print()
    for name, outcome in checks:
        mark = "+" if outcome else ("-" if outcome is False else " ")
        label = "passed" if outcome else ("FAILED" if outcome is False else "not checked")
        print(f"  {mark} {name}: {label}")

    if result.errors:
        print("\nErrors:")
        for error in result.errors:
            print(f"  - {error}")

    if result.warnings:
        print("\nWarnings:")
        for warning in result.warnings:
            print(f"  ! {warning}")

    print()


# ============================================================
# Commands
# ============================================================

def cmd_canonicalize(args) -> int:
    """Print the canonical bytes of a JSON document; the hash goes to stderr."""
    try:
        value = _load_json(args.file)
    except (OSError, json.JSONDecodeError) as e:
        return _error(f"Cannot read {args.file}: {e}")

    try:
        data = canonicalize(value)
    except MatchProofError as e:
        return _error(str(e))

    _write_output(data, args.output)
    print(f"sha256: {Hasher.hash_bytes(data)}", file=sys.stderr)
    return EXIT_OK


async def _verify(args) -> int:
    services = _build_services(args)
    try:
        if args.file:
            try:
                record = _load_json(args.file)
            except (OSError, json.JSONDecodeError) as e:
                return _error(f"Cannot read {args.file}: {e}")
        else:
            try:
                record = await services.verifier.load_record(args.match_id)
            except (MatchProofError, ValueError) as e:
                return _error(f"Cannot load match {args.match_id}: {e}")
            if record is None:
                return _error(f"Match {args.match_id} not found in the object store")

        result = await services.verifier.verify_match(
            args.match_id,
            record,
            anchor_transaction=args.anchor_tx,
            batch_id=args.batch_id,
        )
    finally:
        await services.close(flush=False)

    get_metrics().record_verification(result.is_valid)
    print_report(result, json_output=args.json)
    return EXIT_OK if result.is_valid else EXIT_INVALID


def cmd_verify(args) -> int:
    """Verify a match record against its anchor."""
    return asyncio.run(_verify(args))


async def _upload(args) -> int:
    try:
        record = _load_json(args.file)
    except (OSError, json.JSONDecodeError) as e:
        return _error(f"Cannot read {args.file}: {e}")

    services = _build_services(args)
    try:
        await services.batch_manager.load_pending()
        result = await upload_match(services, record, AnchorMode(args.anchor))
    except MatchProofError as e:
        return _error(str(e))
    finally:
        # Pending batch entries stay persisted for a later `flush`
        await services.close(flush=False)

    print(json.dumps(result.to_dict(), indent=2))
    return EXIT_OK


def cmd_upload(args) -> int:
    """Store a match record and anchor it."""
    return asyncio.run(_upload(args))


async def _flush(args) -> int:
    services = _build_services(args)
    try:
        restored = await services.batch_manager.load_pending()
        logger.info(f"Loaded {restored} pending entries")
        manifest = await services.batch_manager.flush()
    except MatchProofError as e:
        return _error(f"Flush failed: {e}")
    finally:
        await services.close(flush=False)

    if manifest is None:
        print("Nothing to flush")
        return EXIT_OK

    get_metrics().record_batch(manifest.match_count)
    print(f"Batch:       {manifest.batch_id}")
    print(f"Matches:     {manifest.match_count}")
    print(f"Merkle root: {manifest.merkle_root}")
    print(f"Anchor:      {manifest.anchor_txid or 'NOT ANCHORED'}")
    return EXIT_OK


def cmd_flush(args) -> int:
    """Close the pending batch."""
    return asyncio.run(_flush(args))


def cmd_keygen(args) -> int:
    """Generate an Ed25519 keypair."""
    keypair = KeyManager.generate_keypair()
    if args.json:
        print(json.dumps({"private_key": keypair.private_key, "public_key": keypair.public_key}, indent=2))
        return EXIT_OK

    print(f"Private key (PKCS#8 hex): {keypair.private_key}")
    print(f"Public key (hex):         {keypair.public_key}")
    print("\nFor the coordinator, set:")
    print(f"  MATCHPROOF_COORDINATOR_PRIVATE_KEY={keypair.private_key}")
    print(f"  MATCHPROOF_COORDINATOR_PUBLIC_KEY={keypair.public_key}")
    return EXIT_OK


def cmd_sign(args) -> int:
    """Append a player signature over the unsigned canonical record."""
    try:
        record = MatchRecord.model_validate(_load_json(args.file))
    except (OSError, json.JSONDecodeError) as e:
        return _error(f"Cannot read {args.file}: {e}")
    except ValidationError as e:
        return _error(f"Invalid match record: {e}")

    try:
        signature = Signer.sign(canonicalize(record.unsigned_document()), args.key)
    except MatchProofError as e:
        return _error(str(e))

    if record.player_public_keys and signature.public_key not in record.player_public_keys:
        print(f"WARNING: {signature.public_key[:16]}... is not a listed player key", file=sys.stderr)

    signed = record.with_signature(signature)
    _write_output(canonicalize_to_str(signed.to_document()).encode("utf-8"), args.output)
    return EXIT_OK


# ============================================================
# Entry point
# ============================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="matchproof",
        description="Match integrity: canonicalize, anchor and verify match records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    backends = argparse.ArgumentParser(add_help=False)
    backends.add_argument("--storage", help="Local object store directory (overrides MATCHPROOF_STORAGE_*)")
    backends.add_argument("--ledger", help="Local ledger file (overrides MATCHPROOF_LEDGER_*)")

    # canonicalize
    p_canon = subparsers.add_parser("canonicalize", help="Print the canonical form of a JSON file")
    p_canon.add_argument("file", help="JSON file, or - for stdin")
    p_canon.add_argument("--output", "-o", help="Write canonical bytes here instead of stdout")

    # verify
    p_verify = subparsers.add_parser("verify", parents=[backends], help="Verify a match record")
    p_verify.add_argument("match_id", help="Match id")
    p_verify.add_argument("--file", help="Record file (default: load from the object store)")
    p_verify.add_argument("--anchor-tx", help="Anchor transaction id (skips the ledger scan)")
    p_verify.add_argument("--batch-id", help="Batch id (skips the batch pointer lookup)")
    p_verify.add_argument("--json", action="store_true", help="Output result as JSON")

    # upload
    p_upload = subparsers.add_parser("upload", parents=[backends], help="Store and anchor a match record")
    p_upload.add_argument("--file", required=True, help="Match record JSON file")
    p_upload.add_argument(
        "--anchor",
        choices=[m.value for m in AnchorMode],
        default=AnchorMode.BATCH.value,
        help="Anchoring mode (default: batch)",
    )

    # flush
    subparsers.add_parser("flush", parents=[backends], help="Close the pending batch")

    # keygen
    p_keygen = subparsers.add_parser("keygen", help="Generate an Ed25519 keypair")
    p_keygen.add_argument("--json", action="store_true", help="Output keys as JSON")

    # sign
    p_sign = subparsers.add_parser("sign", help="Add a player signature to a match record")
    p_sign.add_argument("file", help="Match record JSON file")
    p_sign.add_argument("--key", required=True, help="Player private key (PKCS#8 or seed hex)")
    p_sign.add_argument("--output", "-o", help="Write the signed record here instead of stdout")

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return EXIT_ERROR

    # Logs go to stderr so command output on stdout stays machine-readable
    setup_logging(stream=sys.stderr)

    commands = {
        "canonicalize": cmd_canonicalize,
        "verify": cmd_verify,
        "upload": cmd_upload,
        "flush": cmd_flush,
        "keygen": cmd_keygen,
        "sign": cmd_sign,
    }

    try:
        return commands[args.command](args)
    except (ValueError, RuntimeError) as e:
        # Configuration problems: unknown driver, missing production key
        return _error(str(e))


if __name__ == "__main__":
    sys.exit(main())
