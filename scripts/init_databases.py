#!/usr/bin/env python3
"""
Database Initialization Script
==============================

Create the pipeline tables, verify the queue backend and seed the
discovery endpoint registry.

Usage:
    python scripts/init_databases.py
    python scripts/init_databases.py --postgres-only
    python scripts/init_databases.py --seed --endpoints-file endpoints.json

Version: 0.1.0
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from shared.logging import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False, service_name="init-db")
logger = get_logger(__name__)


async def init_postgres() -> bool:
    """Create all pipeline tables."""
    from sqlalchemy.exc import SQLAlchemyError

    # Row models register on Base when the store module is imported
    import services.regulatory_truth.store.postgres  # noqa: F401
    from shared.database.postgres import PostgresClient

    logger.info("postgres_init_started")

    try:
        await PostgresClient.create_all()
        health = await PostgresClient.health_check()
        if health["status"] != "healthy":
            logger.error("postgres_init_failed", error=health.get("error"))
            return False

        logger.info("postgres_init_completed", latency_ms=health["latency_ms"])
        return True

    except (SQLAlchemyError, OSError) as e:
        logger.error("postgres_init_failed", error=str(e))
        return False

    finally:
        await PostgresClient.close()


async def init_redis() -> bool:
    """Verify the Redis queue backend."""
    from shared.database.redis import RedisClient

    logger.info("redis_init_started")

    try:
        health = await RedisClient.health_check()
        if health["status"] != "healthy":
            logger.error("redis_init_failed", error=health.get("error"))
            return False

        logger.info("redis_init_completed", latency_ms=health["latency_ms"])
        return True

    finally:
        await RedisClient.close()


async def seed_endpoints(endpoints_file: Path | None) -> bool:
    """Seed the discovery endpoint registry into PostgreSQL."""
    from services.regulatory_truth.registry import (
        EndpointRegistry,
        configured_endpoints,
        load_endpoints,
    )
    from services.regulatory_truth.store import create_store
    from shared.config import StoreBackend
    from shared.database.postgres import PostgresClient

    logger.info("endpoint_seed_started", endpoints_file=str(endpoints_file) if endpoints_file else None)

    try:
        endpoints = load_endpoints(endpoints_file) if endpoints_file else configured_endpoints()
    except ValueError as e:
        logger.error("endpoint_seed_failed", error=str(e))
        return False

    try:
        stored = await EndpointRegistry(create_store(StoreBackend.POSTGRES)).seed(endpoints)
    finally:
        await PostgresClient.close()

    logger.info("endpoint_seed_completed", endpoints=len(stored))
    return True


async def main(args: argparse.Namespace) -> int:
    """Main initialization function."""
    logger.info("regulatory_truth_init", postgres=True, redis=args.all, seed=args.seed)

    results = {}

    results["PostgreSQL"] = await init_postgres()

    if args.all:
        results["Redis"] = await init_redis()

    if args.seed and results["PostgreSQL"]:
        results["Endpoints"] = await seed_endpoints(args.endpoints_file)

    failed = [name for name, success in results.items() if not success]
    for name, success in results.items():
        logger.info("init_step_result", step=name, ok=success)

    if failed:
        logger.error("init_failed", failed=failed)
        return 1

    logger.info("init_completed")
    return 0


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Initialize Regulatory Truth backends",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--postgres-only",
        action="store_true",
        help="Initialize only PostgreSQL",
    )
    parser.add_argument(
        "--seed",
        action="store_true",
        help="Seed the discovery endpoint registry",
    )
    parser.add_argument(
        "--endpoints-file",
        type=Path,
        default=None,
        help="JSON endpoint configuration (defaults to PIPELINE_ENDPOINTS_FILE or the built-in registry)",
    )

    args = parser.parse_args()

    args.all = not args.postgres_only

    return args


if __name__ == "__main__":
    args = parse_args()
    exit_code = asyncio.run(main(args))
    sys.exit(exit_code)
