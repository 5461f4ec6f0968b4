#!/usr/bin/env python3
"""
Database Initialization Script

Creates, checks and inspects the database behind run records, history and
stored credentials.

Examples:
  python scripts/init_database.py --setup            # Create missing tables
  python scripts/init_database.py --setup --drop     # Drop and recreate tables
  python scripts/init_database.py --test             # Connectivity and table check
  python scripts/init_database.py --info             # Show the configured database
  python scripts/init_database.py --runs 5           # List the five latest batch runs
"""

import os
import sys
import argparse
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from certbatch.database.connection import DatabaseManager, get_database_manager, init_database
from certbatch.database.models import Base
from certbatch.database.services import BatchRunService


ENV_VARS = ["DATABASE_URL", "DB_ECHO", "DB_POOL_SIZE", "DB_MAX_OVERFLOW", "DB_POOL_TIMEOUT", "DB_POOL_RECYCLE"]


def setup_database(db_manager: DatabaseManager, drop_existing: bool = False) -> bool:
    """
    Create the certbatch tables

    Args:
        db_manager: Manager for the configured database
        drop_existing: Drop the tables first (asks for confirmation)

    Returns:
        bool: Success status
    """
    print(f"Setting up {db_manager.config.safe_url()}")

    if drop_existing:
        print("WARNING: batch runs, history and stored credentials will be deleted.")
        if input("Type 'YES' to confirm: ") != "YES":
            print("Aborted by user")
            return False

    success, message = init_database(drop_first=drop_existing)
    print(message)
    if success:
        print("Start the API with: certbatch-server")
    return success


def show_connection_info(db_manager: DatabaseManager):
    config = db_manager.config
    print(f"Database: {config.safe_url()}")
    if config.sqlite_path is not None:
        exists = "exists" if config.sqlite_path.exists() else "not created yet"
        print(f"SQLite file: {config.sqlite_path.resolve()} ({exists})")
    elif config.is_sqlite:
        print("SQLite in-memory database")

    print("Environment:")
    for var in ENV_VARS:
        value = os.getenv(var)
        if var == "DATABASE_URL" and value:
            value = config.safe_url()
        print(f"  {var}: {value if value is not None else '(default)'}")


def check_database(db_manager: DatabaseManager) -> bool:
    """Connect, then compare the live tables with the models"""
    ok, error_msg = db_manager.test_connection()
    if not ok:
        print(f"Connection failed: {error_msg}")
        print("Check DATABASE_URL, and for server databases that the server is reachable.")
        return False
    print("Connection successful")

    try:
        existing = set(inspect(db_manager.engine).get_table_names())
    except SQLAlchemyError as e:
        print(f"Could not list tables: {e}")
        return False

    for table in sorted(Base.metadata.tables):
        print(f"  {table}: {'present' if table in existing else 'missing'}")
    if not set(Base.metadata.tables) <= existing:
        print("Run with --setup to create the missing tables.")
        return False
    return True


def list_runs(limit: int) -> bool:
    try:
        runs = BatchRunService.get_recent_runs(limit)
    except SQLAlchemyError as e:
        print(f"Could not read batch runs: {e}")
        return False

    if not runs:
        print("No batch runs recorded")
        return True

    for run in runs:
        status = run["status"] or run["state"]
        print(
            f"{run['batch_id']}  {run['created_at']}  {run['kind']:<11} {run['output_mode']:<5} "
            f"{status:<10} {run['generated_count']}/{run['total_rows']} generated"
        )
    return True


def main():
    """Main CLI interface"""
    parser = argparse.ArgumentParser(
        description="Manage the Certificate Batch Service database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Examples:")[1]
    )
    parser.add_argument("--setup", action="store_true", help="Create database tables")
    parser.add_argument("--drop", action="store_true", help="Drop existing tables before setup (use with --setup)")
    parser.add_argument("--test", action="store_true", help="Test the connection and check tables")
    parser.add_argument("--info", action="store_true", help="Show database connection information")
    parser.add_argument("--runs", type=int, metavar="N", help="List the N most recent batch runs")

    args = parser.parse_args()

    if not any([args.setup, args.test, args.info, args.runs]):
        parser.print_help()
        return

    db_manager = get_database_manager()
    success = True

    if args.info:
        show_connection_info(db_manager)

    if args.test:
        success = check_database(db_manager) and success

    if args.setup:
        success = setup_database(db_manager, drop_existing=args.drop) and success

    if args.runs:
        success = list_runs(args.runs) and success

    if not success:
        sys.exit(1)


if __name__ == "__main__":
    main()
