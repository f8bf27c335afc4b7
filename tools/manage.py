#!/usr/bin/env python3
"""
Species Ledger Management CLI

Commands for managing the ledger system:
- verify-chain: Verify ledger chain integrity by full replay
- export-events: Export events to JSON
- summary: Print ledger state (counts, admin, validator, pause)
- generate-keys: Generate an Ed25519 operator keypair
- health-check: Run comprehensive health checks
- serve: Run the API with uvicorn

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage verify-chain
    python -m tools.manage export-events -o events.json
    python -m tools.manage serve --port 8000
"""

import argparse
import json
import os
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _load_ledger(store):
    """Replay the store with the configured operator key."""
    from species_ledger.config import LedgerSettings
    from species_ledger.core import SigningService, SpeciesLedger

    settings = LedgerSettings.from_env()
    signing_service = SigningService.from_env(production=settings.production)
    return SpeciesLedger.load_from_store(
        store,
        signing_service=signing_service,
        verify=True,
        verify_signatures=settings.verify_signatures and not signing_service.is_ephemeral,
    )


def cmd_verify_chain(args):
    """Verify the integrity of the ledger chain."""
    from species_ledger.core import ChainError
    from species_ledger.runtime import create_event_store

    print("Loading events...")
    store = create_event_store(production=True)

    if store.get_event_count() == 0:
        print("Store is empty. Nothing to verify.")
        return 0

    try:
        ledger = _load_ledger(store)
    except ChainError as e:
        print(f"[FAIL] Chain integrity verification FAILED: {e}")
        return 1

    print(f"Ledger loaded: {ledger.event_count} events, {ledger.get_total_observations()} observations")
    print("[OK] Chain integrity verified OK")
    if ledger.last_event_hash:
        print(f"  Chain head: {ledger.last_event_hash[:16]}...")
    return 0


def cmd_export_events(args):
    """Export all events to a JSON file."""
    from species_ledger.runtime import create_event_store

    print("Loading events...")
    store = create_event_store(production=True)
    events = store.list_all()

    print(f"Found {len(events)} events")

    export_data = [event.model_dump(mode="json") for event in events]

    output_file = args.output or "ledger_export.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(events)} events to {output_file}")


def cmd_summary(args):
    """Print the current ledger state."""
    from species_ledger.runtime import create_event_store

    store = create_event_store(production=True)
    if store.get_event_count() == 0:
        print("Store is empty. No ledger deployed yet.")
        return 0

    ledger = _load_ledger(store)

    print("=== Species Ledger Summary ===\n")
    print(f"  Events:               {ledger.event_count}")
    print(f"  Observations:         {ledger.get_total_observations()}")
    print(f"  Admin:                {ledger.get_admin()}")
    print(f"  Authorized validator: {ledger.get_authorized_validator()}")
    print(f"  Paused:               {'yes' if ledger.is_paused() else 'no'}")
    return 0


def cmd_generate_keys(args):
    """Generate an operator signing keypair."""
    from species_ledger.core import Signer

    private_key, public_key = Signer.generate_keypair()

    print("\n  Public key (for verification):")
    print(f"  {public_key}")
    print("\n  Private key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  Set these environment variables:")
    print(f"  SPECIES_LEDGER_SIGNING_PRIVATE_KEY={private_key}")
    print(f"  SPECIES_LEDGER_SIGNING_PUBLIC_KEY={public_key}")


def cmd_health_check(args):
    """Run comprehensive health checks."""
    from species_ledger.config import StoreSettings
    from species_ledger.core import ChainError
    from species_ledger.runtime import create_event_store

    store_settings = StoreSettings.from_env()

    print("=== Species Ledger Health Check ===\n")

    print("Database:")
    if store_settings.uses_database and store_settings.dsn:
        print(f"  Type: PostgreSQL ({store_settings.driver.value})")
        print(f"  Connection: {store_settings.describe()}")
        try:
            import psycopg2
            conn = psycopg2.connect(store_settings.connection_dsn())
            conn.close()
            print("  Status: [OK] Connected")
        except Exception as e:
            print(f"  Status: [FAIL] Failed - {e}")
            return 1
    else:
        print("  Type: In-Memory")
        print("  Status: [OK]")

    print("\nLedger:")
    store = create_event_store(store_settings=store_settings)
    head = store.get_head()
    print(f"  Events: {head.next_sequence}")
    print(f"  Last hash: {head.last_event_hash[:16] + '...' if head.last_event_hash else 'None'}")

    if head.next_sequence > 0:
        try:
            _load_ledger(store)
            print("  Chain integrity: [OK] Valid")
        except ChainError as e:
            print(f"  Chain integrity: [FAIL] INVALID! {e}")
            return 1

    print("\nEnvironment:")
    if os.environ.get("SPECIES_LEDGER_SIGNING_PRIVATE_KEY"):
        print("  Operator signing key: [OK] Set")
    else:
        print("  Operator signing key: [WARN] Using ephemeral (development)")

    print("\n=== Health Check Complete ===")
    return 0


def cmd_serve(args):
    """Run the API server."""
    import uvicorn

    uvicorn.run(
        "species_ledger.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


def main():
    parser = argparse.ArgumentParser(
        description="Species Ledger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("verify-chain", help="Verify ledger chain integrity")

    p_export = subparsers.add_parser("export-events", help="Export all events to JSON")
    p_export.add_argument("--output", "-o", help="Output file (default: ledger_export.json)")

    subparsers.add_parser("summary", help="Print ledger state")

    subparsers.add_parser("generate-keys", help="Generate an operator signing keypair")

    subparsers.add_parser("health-check", help="Run comprehensive health checks")

    p_serve = subparsers.add_parser("serve", help="Run the API server")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true", help="Reload on code changes")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "verify-chain": cmd_verify_chain,
        "export-events": cmd_export_events,
        "summary": cmd_summary,
        "generate-keys": cmd_generate_keys,
        "health-check": cmd_health_check,
        "serve": cmd_serve,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
