"""
Create the outbox_jobs and consumed_nonces tables (and their indexes).

Usage:
    python migrations/create_outbox_tables.py
    python migrations/create_outbox_tables.py --database-url postgresql://...

The script is idempotent and safe to run multiple times. It inspects the current
schema and only creates the tables and indexes that are missing.
"""

import argparse
import os
import sys

from dotenv import load_dotenv

from sqlalchemy import create_engine, inspect
from sqlalchemy.exc import OperationalError, ProgrammingError

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
# Flask-SQLAlchemy resolves the local sqlite:///linkbox.sqlite against the instance folder
DEFAULT_SQLITE_PATH = os.path.join(ROOT_DIR, "instance", "linkbox.sqlite")

sys.path.insert(0, ROOT_DIR)

# Load environment variables from a .env file if present
load_dotenv()

from linkbox.models import ConsumedNonce, OutboxJob

TABLES = (OutboxJob.__table__, ConsumedNonce.__table__)


def normalize_sqlite_path(path: str) -> str:
    """Return a SQLAlchemy-friendly SQLite URL for the given path."""
    if not os.path.isabs(path):
        path = os.path.join(ROOT_DIR, path)
    return f"sqlite:///{path}"


def infer_database_url(cli_url: str = None) -> str:
    """Figure out which database to hit, honoring CLI and environment defaults."""
    candidates = [
        cli_url,
        os.environ.get("DATABASE_URL"),
        os.environ.get("SANDBOX_DATABASE_URL"),
        os.environ.get("SQLALCHEMY_DATABASE_URI"),
        os.environ.get("LINKBOX_SQLITE_PATH"),
    ]

    for value in candidates:
        if not value:
            continue

        value = value.strip()
        if value.startswith("postgres://"):
            # SQLAlchemy expects postgresql://
            return value.replace("postgres://", "postgresql://", 1)

        if value.startswith(("postgresql://", "sqlite://")):
            return value

        # Treat anything else as a filesystem path to a SQLite DB
        return normalize_sqlite_path(value)

    return normalize_sqlite_path(DEFAULT_SQLITE_PATH)


def table_exists(engine, table_name: str) -> bool:
    return inspect(engine).has_table(table_name)


def index_exists(engine, table_name: str, index_name: str) -> bool:
    """Check if a given index exists on the specified table."""
    inspector = inspect(engine)
    indexes = inspector.get_indexes(table_name)
    return any(idx["name"] == index_name for idx in indexes)


def migrate(database_url: str = None) -> bool:
    """Create any missing outbox/replay-guard tables and indexes."""
    db_url = infer_database_url(database_url)
    print(f"Connecting to database: {db_url.split('@')[-1]}")

    engine = create_engine(db_url)

    try:
        for table in TABLES:
            if table_exists(engine, table.name):
                print(f"✓ Table '{table.name}' already exists.")
                for index in table.indexes:
                    if index_exists(engine, table.name, index.name):
                        continue
                    print(f"  Adding missing index '{index.name}'...")
                    index.create(engine)
                continue

            print(f"Creating table '{table.name}'...")
            # create() also emits the table's indexes
            table.create(engine)

        missing = [table.name for table in TABLES if not table_exists(engine, table.name)]
        if missing:
            print(f"✗ Tables still missing after migration: {', '.join(missing)}")
            return False

        print("✓ Outbox tables are up to date.")
        return True

    except (OperationalError, ProgrammingError) as exc:
        print(f"✗ Database error while creating tables: {exc}")
        return False
    finally:
        engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(
        description="Create outbox_jobs and consumed_nonces tables."
    )
    parser.add_argument(
        "--database-url",
        help="Override database URL (otherwise inferred from env or defaults).",
    )
    args = parser.parse_args()

    success = migrate(args.database_url)
    sys.exit(0 if success else 1)
