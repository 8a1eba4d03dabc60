"""
Database migration entrypoint for the settlement ledgers.

This script runs Alembic migrations up to the latest head revision.
It reads the database connection URI from ``--uri`` or the
``STATE_STORE_URI`` environment variable.  Use this script in CI and
deployment pipelines to create or upgrade the ledger schema before
starting settlement workers with ``LEDGER_MODE=db``.
"""

from __future__ import annotations

import argparse
import os
import pathlib

from alembic import command
from alembic.config import Config


def build_config(uri: str) -> Config:
    base_dir = pathlib.Path(__file__).resolve().parents[1]
    cfg = Config()
    cfg.set_main_option("script_location", str(base_dir / "alembic"))
    cfg.set_main_option("sqlalchemy.url", uri)
    return cfg


def run_migrations(uri: str, revision: str = "head") -> None:
    command.upgrade(build_config(uri), revision)


def main() -> None:
    ap = argparse.ArgumentParser(description="Upgrade the settlement ledger schema.")
    ap.add_argument("--uri", default=os.getenv("STATE_STORE_URI"), help="SQLAlchemy database URI")
    ap.add_argument("--revision", default="head", help="Target Alembic revision")
    args = ap.parse_args()
    if not args.uri:
        ap.error("--uri or STATE_STORE_URI is required")
    run_migrations(args.uri, args.revision)
    print(f"Migrated {args.uri} to {args.revision}")


if __name__ == "__main__":
    main()
