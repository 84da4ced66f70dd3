"""
Credit Wallet Database Setup

Creates the ledger collections and their indexes. Safe to re-run: existing
collections and indexes are left alone and nothing is ever dropped.

The API calls ensure_indexes() on startup; the CLI below also creates the
collections up front and stamps the schema version.

Usage:
    python -m credit_wallet.db_init [--dry-run]

Production runs need CREDIT_WALLET_INIT_CONFIRM=YES.
"""

import os
import sys
import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

sys.path.insert(0, str(Path(__file__).parent.parent))

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import CollectionInvalid, OperationFailure

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "v1.0.0"
META_COLLECTION = "credit_wallet_meta"

LEDGER_COLLECTIONS = [
    "accounts",
    "credit_transactions",
    "billing_events",
    "billing_anomalies",
    META_COLLECTION,
]

# (collection, keys, create_index kwargs)
REQUIRED_INDEXES = [
    ("accounts", [("user_id", 1)], {"unique": True, "name": "idx_user_id_unique"}),
    ("accounts", [("stripe_customer_id", 1)], {"sparse": True, "name": "idx_stripe_customer_id"}),
    ("credit_transactions", [("user_id", 1), ("timestamp", -1)], {"name": "idx_user_timestamp"}),
    ("credit_transactions", [("reference", 1)], {"sparse": True, "name": "idx_reference"}),
    ("billing_events", [("event_id", 1)], {"unique": True, "name": "idx_event_id_unique"}),
    ("billing_anomalies", [("user_id", 1), ("timestamp", -1)], {"name": "idx_anomaly_user_timestamp"}),
]


def check_environment() -> Tuple[bool, str]:
    """Returns (allowed, message). Production needs an explicit confirmation."""
    env = os.environ.get("ENVIRONMENT", "development")
    if env.lower() != "production":
        return True, f"Environment: {env}"

    confirm = os.environ.get("CREDIT_WALLET_INIT_CONFIRM", "")
    if confirm == "YES":
        return True, "Environment: production (confirmed)"
    return False, (
        "Refusing to touch a production database without "
        f"CREDIT_WALLET_INIT_CONFIRM=YES (got '{confirm}')"
    )


async def ensure_collection(db, name: str, dry_run: bool = False) -> str:
    if name in await db.list_collection_names():
        return f"  [SKIP] collection {name}"
    if dry_run:
        return f"  [DRY-RUN] collection {name}"

    try:
        await db.create_collection(name)
    except CollectionInvalid:
        # created concurrently
        return f"  [SKIP] collection {name}"
    return f"  [CREATE] collection {name}"


async def ensure_index(db, collection_name: str, keys: List[Tuple], options: dict, dry_run: bool = False) -> str:
    collection = db[collection_name]
    name = options.get("name", str(keys))
    label = f"{collection_name}.{name}"

    if name in await collection.index_information():
        return f"  [SKIP] index {label}"
    if dry_run:
        return f"  [DRY-RUN] index {label}"

    try:
        await collection.create_index(keys, **options)
    except OperationFailure as e:
        if "already exists" not in str(e).lower():
            raise
        return f"  [SKIP] index {label}"
    return f"  [CREATE] index {label}"


async def ensure_indexes(db, dry_run: bool = False) -> List[str]:
    """Create every missing index in REQUIRED_INDEXES. Returns one status line each."""
    return [
        await ensure_index(db, collection_name, keys, options, dry_run)
        for collection_name, keys, options in REQUIRED_INDEXES
    ]


async def stamp_schema_version(db, dry_run: bool = False) -> str:
    if dry_run:
        return f"  [DRY-RUN] schema version {SCHEMA_VERSION}"

    await db[META_COLLECTION].update_one(
        {"_id": "schema"},
        {"$set": {"version": SCHEMA_VERSION, "applied_at": datetime.now(timezone.utc).isoformat()}},
        upsert=True
    )
    return f"  [UPDATE] schema version {SCHEMA_VERSION}"


async def run_init(dry_run: bool = False) -> int:
    """Set up the database named by MONGO_URL / DB_NAME. Returns a process exit code."""
    from dotenv import load_dotenv
    load_dotenv(Path(__file__).parent.parent / '.env')

    allowed, message = check_environment()
    if not allowed:
        logger.error(message)
        return 1
    logger.info(message)

    mongo_url = os.environ.get('MONGO_URL')
    db_name = os.environ.get('DB_NAME')
    if not mongo_url or not db_name:
        logger.error("MONGO_URL and DB_NAME must be set")
        return 1

    client = AsyncIOMotorClient(mongo_url)
    try:
        await client.admin.command('ping')
    except Exception as e:
        logger.error(f"Cannot reach MongoDB: {e}")
        client.close()
        return 1

    db = client[db_name]
    logger.info(f"Setting up {db_name} (dry_run={dry_run})")

    try:
        for name in LEDGER_COLLECTIONS:
            logger.info(await ensure_collection(db, name, dry_run))
        for line in await ensure_indexes(db, dry_run):
            logger.info(line)
        logger.info(await stamp_schema_version(db, dry_run))
    finally:
        client.close()

    logger.info("Credit wallet database ready")
    return 0


def main():
    import argparse

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    parser = argparse.ArgumentParser(description="Create credit wallet collections and indexes")
    parser.add_argument('--dry-run', action='store_true', help='Show what would change without writing')
    args = parser.parse_args()

    sys.exit(asyncio.run(run_init(dry_run=args.dry_run)))


if __name__ == "__main__":
    main()
