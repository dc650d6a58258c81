#!/usr/bin/env python3
"""
claimgate Management CLI

Commands for operating the claim registry:
- init-db: Apply the claim ledger schema to PostgreSQL
- lookup: Show the record for one subject
- list-pending: List claims still in flight
- recover: Resume abandoned Pending claims (re-runs upload/broadcast/commit)
- generate-wallet: Create an Ed25519 payer keypair
- price-spec: Print the current price as a PAYMENT-REQUIRED challenge
- health-check: Check the claim ledger and configuration

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage init-db
    python -m tools.manage lookup did:example:alice
    python -m tools.manage recover --force
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _build_coordinator():
    from claimgate.clients import build_clients
    from claimgate.core.config import RegistryConfig
    from claimgate.core.coordinator import ClaimSubmissionCoordinator
    from claimgate.db import create_claim_ledger

    config = RegistryConfig.from_env()
    clients = build_clients(config.clients)
    coordinator = ClaimSubmissionCoordinator(
        create_claim_ledger(),
        clients,
        pricing=config.pricing,
        clients_config=config.clients,
        config=config.coordinator,
    )
    return coordinator, clients


def cmd_init_db(args):
    """Apply schema.sql to the configured database."""
    from claimgate.db import DatabaseConfig, get_database_url

    if get_database_url() is None:
        print("Error: no database configured (set DATABASE_URL or DATABASE_HOST)")
        return 1

    import psycopg2

    config = DatabaseConfig.from_env()
    schema = (Path(__file__).parent.parent / "claimgate" / "db" / "schema.sql").read_text()

    print(f"Applying schema to {config.to_url(include_password=False)}")
    conn = psycopg2.connect(config.to_dsn())
    try:
        with conn:
            with conn.cursor() as cursor:
                cursor.execute(schema)
    finally:
        conn.close()
    print("[OK] Schema applied")
    return 0


def cmd_lookup(args):
    """Print the record for one subject."""
    from claimgate.db import create_claim_ledger

    record = create_claim_ledger().get(args.subject_id)
    if record is None:
        print(f"No claim for {args.subject_id}")
        return 1
    print(json.dumps(record.model_dump(mode="json"), indent=2))
    return 0


def cmd_list_pending(args):
    """List Pending records, oldest first."""
    from claimgate.db import create_claim_ledger

    pending = create_claim_ledger().list_pending()
    if not pending:
        print("No pending claims.")
        return 0

    print(f"{len(pending)} pending claim(s):")
    for record in pending:
        stage = "broadcast" if record.transaction_hash else (
            "uploaded" if record.content_address else "reserved"
        )
        print(
            f"  {record.subject_id}  {record.claim_id}  stage={stage}  "
            f"attempts={record.attempts}  updated={record.updated_at.isoformat()}"
        )
    return 0


def cmd_recover(args):
    """Resume abandoned Pending claims."""
    coordinator, clients = _build_coordinator()

    async def run():
        try:
            return await coordinator.recover_pending(force=args.force)
        finally:
            await clients.aclose()

    recovered = asyncio.run(run())
    if not recovered:
        print("Nothing to recover.")
        return 0

    for record in recovered:
        print(f"  {record.subject_id}: {record.status.value}")
    failed = [r for r in recovered if not r.is_final]
    print(f"\nRecovered {len(recovered) - len(failed)} of {len(recovered)} claim(s)")
    return 1 if failed else 0


def cmd_generate_wallet(args):
    """Create an Ed25519 payer keypair."""
    from claimgate.core import Signer

    private_key, public_key = Signer.generate_keypair()
    print("Payer address (public key):")
    print(f"  {public_key}")
    print("\nPrivate key (KEEP SECRET!):")
    print(f"  {private_key}")
    print("\n  Set this environment variable for the demo client:")
    print(f"  CLAIMGATE_WALLET_PRIVATE_KEY={private_key}")
    return 0


def cmd_price_spec(args):
    """Print the current challenge."""
    from claimgate.core.config import PricingConfig

    challenge = PricingConfig.from_env().challenge()
    if args.header:
        print(challenge.to_header())
    else:
        print(json.dumps(challenge.to_dict(), indent=2))
    return 0


def cmd_health_check(args):
    """Run health checks against the configured claim ledger."""
    from claimgate.core.config import RegistryConfig
    from claimgate.db import DatabaseConfig, ClaimStoreDriver, create_claim_ledger, get_claimstore_driver
    from claimgate.observability import check_health

    print("=== claimgate Health Check ===\n")

    driver = get_claimstore_driver()
    print("Claim ledger:")
    if driver == ClaimStoreDriver.MEMORY:
        print("  Type: In-Memory")
    else:
        config = DatabaseConfig.from_env()
        print(f"  Type: PostgreSQL ({driver.value})")
        print(f"  Host: {config.host}:{config.port}")

    status = check_health(create_claim_ledger())
    for name, check in status.checks.items():
        marker = "[OK]" if check.get("status") == "healthy" else "[FAIL]"
        details = ", ".join(f"{k}={v}" for k, v in check.items() if k != "status")
        print(f"  {name}: {marker} {details}")

    registry = RegistryConfig.from_env()
    print("\nConfiguration:")
    print(f"  Price: {registry.pricing.price_amount} {registry.pricing.currency} on {registry.pricing.network}")
    print(f"  Facilitator: {registry.clients.facilitator_driver}")
    print(f"  Content store: {registry.clients.content_store_driver}")
    print(f"  Ledger: {registry.clients.ledger_driver}")
    if registry.clients.facilitator_driver == "mock":
        print("  [WARN] Mock facilitator accepts locally signed proofs (development)")

    print("\n=== Health Check Complete ===")
    return 0 if status.healthy else 1


def main():
    parser = argparse.ArgumentParser(
        description="claimgate Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Apply the claim ledger schema")

    p_lookup = subparsers.add_parser("lookup", help="Show the record for a subject")
    p_lookup.add_argument("subject_id", help="Subject identifier (DID)")

    subparsers.add_parser("list-pending", help="List claims still in flight")

    p_recover = subparsers.add_parser("recover", help="Resume abandoned Pending claims")
    p_recover.add_argument(
        "--force",
        action="store_true",
        help="Ignore the stale threshold and resume every Pending claim",
    )

    subparsers.add_parser("generate-wallet", help="Create an Ed25519 payer keypair")

    p_price = subparsers.add_parser("price-spec", help="Print the current payment challenge")
    p_price.add_argument("--header", action="store_true", help="Print the base64 header form")

    subparsers.add_parser("health-check", help="Run health checks")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    from claimgate.observability import setup_logging

    setup_logging()

    commands = {
        "init-db": cmd_init_db,
        "lookup": cmd_lookup,
        "list-pending": cmd_list_pending,
        "recover": cmd_recover,
        "generate-wallet": cmd_generate_wallet,
        "price-spec": cmd_price_spec,
        "health-check": cmd_health_check,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
