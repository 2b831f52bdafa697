#!/usr/bin/env python3
"""Initialize the strategy database.

This script:
1. Runs Alembic migrations to create/update tables
2. Optionally seeds a demo strategy with a small block tree

Usage:
    python scripts/init_db.py [--seed] [--owner OWNER_ID]

Options:
    --seed              Create the demo strategy (skipped if the owner already has it)
    --owner             Owner id for the demo strategy (default: AUTH_DEV_USER_ID)
    --skip-migrations   Skip Alembic migrations (use direct table creation)
"""

import argparse
import logging
import subprocess
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from config.settings import get_settings
from scripts.helpers.logging_setup import setup_script_logging
from src.data.database.connection import get_db_manager
from src.data.database.dependencies import session_scope
from src.strategy_tree.errors import StrategyTreeError
from src.strategy_tree.service import StrategyTreeService
from src.strategy_tree.types import BlockType

logger = logging.getLogger(__name__)

DEMO_STRATEGY_NAME = "Demo: SMA dip buyer"


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Initialize the strategy database")
    parser.add_argument("--seed", action="store_true", help="Seed a demo strategy")
    parser.add_argument("--owner", default=None, help="Owner id for seeded data")
    parser.add_argument("--skip-migrations", action="store_true", help="Skip Alembic migrations")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser.parse_args()


def check_database_connection() -> bool:
    """Check if database is accessible. Returns True if successful."""
    settings = get_settings()
    target = settings.database.url_override or (
        f"{settings.database.host}:{settings.database.port}/{settings.database.name}"
    )
    logger.info("Checking database connection to: %s", target)
    if get_db_manager().health_check():
        logger.info("Database connection successful")
        return True
    logger.error("Database connection failed")
    return False


def run_migrations() -> bool:
    """Run `alembic upgrade head`. Returns True if successful."""
    logger.info("Running Alembic migrations...")
    try:
        result = subprocess.run(
            ["alembic", "upgrade", "head"],
            cwd=project_root,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        logger.error("Alembic not found. Please install it: pip install alembic")
        return False

    if result.returncode != 0:
        logger.error("Migration failed with error:\n%s", result.stderr)
        return False
    logger.info("Migrations completed successfully")
    if result.stdout:
        logger.debug(result.stdout)
    return True


def create_tables_directly() -> bool:
    """Create tables directly using SQLAlchemy metadata."""
    logger.info("Creating tables directly...")
    try:
        get_db_manager().create_tables()
    except Exception:
        logger.error("Table creation failed", exc_info=True)
        return False
    logger.info("Tables created successfully")
    return True


def seed_demo_strategy(owner_id: str) -> bool:
    """Create a demo strategy: IF SMA(AAPL) < 212 THEN log + buy, ELSE notify."""
    service = StrategyTreeService(session_scope)

    existing = [s for s in service.list_strategies(owner_id) if s.name == DEMO_STRATEGY_NAME]
    if existing:
        logger.info("Demo strategy already exists (id=%s)", existing[0].id)
        return True

    try:
        tree = service.create_strategy(
            owner_id,
            DEMO_STRATEGY_NAME,
            description="Buys AAPL when its 20-period SMA dips below 212",
        )
        dip = service.add_block(
            tree.id,
            tree.root_block_id,
            BlockType.CONDITION_IF,
            payload={
                "indicator_type": "SMA",
                "symbol": "AAPL",
                "interval": "1min",
                "parameters": {"period": 20},
                "operator": "LESS_THAN",
                "target_value": 212,
            },
        )
        service.add_block(
            tree.id,
            dip.id,
            BlockType.ACTION,
            payload={"action_type": "LOG_MESSAGE", "parameters": {"message": "SMA dip"}},
        )
        service.add_block(
            tree.id,
            dip.id,
            BlockType.ACTION,
            payload={
                "action_type": "BUY",
                "parameters": {"symbol": "AAPL", "quantity": 1, "orderType": "market"},
            },
        )
        otherwise = service.add_block(
            tree.id,
            tree.root_block_id,
            BlockType.CONDITION_ELSE,
            payload={
                "indicator_type": "SMA",
                "symbol": "AAPL",
                "interval": "1min",
                "parameters": {"period": 20},
                "operator": "GREATER_THAN_OR_EQUAL",
                "target_value": 212,
            },
        )
        service.add_block(
            tree.id,
            otherwise.id,
            BlockType.ACTION,
            payload={"action_type": "NOTIFY", "parameters": {"message": "No dip"}},
        )
    except StrategyTreeError as e:
        logger.error("Seeding demo strategy failed: %s %s", e.message, e.detail)
        return False

    logger.info("Seeded demo strategy id=%s for owner_id=%s", tree.id, owner_id)
    return True


def _handle_migrations(args) -> bool:
    """Handle migration or direct table creation. Returns True if successful."""
    if args.skip_migrations:
        return create_tables_directly()

    if run_migrations():
        return True

    logger.warning("Trying direct table creation as fallback...")
    return create_tables_directly()


def main() -> None:
    """Main entry point."""
    args = parse_args()
    setup_script_logging(args.verbose, __name__)

    logger.info("=" * 60)
    logger.info("Strategy Blocks - Database Initialization")
    logger.info("=" * 60)

    if not check_database_connection():
        logger.info("Make sure PostgreSQL is running, or set DB_URL_OVERRIDE=sqlite:///strategies.db")
        sys.exit(1)

    if not _handle_migrations(args):
        sys.exit(1)

    if args.seed:
        owner_id = args.owner or get_settings().auth.dev_user_id
        if not seed_demo_strategy(owner_id):
            sys.exit(1)

    logger.info("Database initialization completed")


if __name__ == "__main__":
    main()
