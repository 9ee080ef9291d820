#!/usr/bin/env python3
"""
Database Initialization Script
==============================

Create the pipeline tables in PostgreSQL and verify the Redis and Kafka
connections the job layer and publication events depend on.

Usage:
    python scripts/init_databases.py
    python scripts/init_databases.py --postgres-only
    python scripts/init_databases.py --skip-kafka

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
    """Create every pipeline table (existing tables are left as they are)."""
    # Registers the row classes on Base.metadata
    import services.rule_pipeline.store.tables  # noqa: F401
    from shared.database.postgres import PostgresClient

    logger.info("postgres_init_started")

    try:
        tables = await PostgresClient.create_tables()
        health = await PostgresClient.health_check()
        if health["status"] != "healthy":
            logger.error("postgres_init_failed", error=health.get("error"))
            return False

        logger.info("postgres_init_completed", tables=tables, latency_ms=health["latency_ms"])
        return True

    except Exception as e:
        logger.error("postgres_init_failed", error=str(e))
        return False

    finally:
        await PostgresClient.close()


async def init_redis() -> bool:
    """Verify the Redis connection used for shared queue rate limits."""
    from shared.database.redis import RedisClient

    try:
        health = await RedisClient.health_check()
        if health["status"] != "healthy":
            logger.error("redis_init_failed", error=health.get("error"))
            return False

        logger.info("redis_connected", latency_ms=health["latency_ms"])
        return True

    finally:
        await RedisClient.close()


async def init_kafka() -> bool:
    """Verify the Kafka connection used for publication events."""
    from shared.database.kafka import KafkaClient, Topics

    try:
        health = await KafkaClient.health_check()
        if health["status"] != "healthy":
            logger.error("kafka_init_failed", error=health.get("error"))
            return False

        logger.info(
            "kafka_connected",
            brokers=health["brokers"],
            topics=[Topics.RELEASE_PUBLISHED, Topics.RULE_PUBLISHED],
        )
        return True

    finally:
        await KafkaClient.close()


async def main(args: argparse.Namespace) -> int:
    """Main initialization function."""
    results = {"PostgreSQL": await init_postgres()}

    if not args.postgres_only:
        results["Redis"] = await init_redis()
        if not args.skip_kafka:
            results["Kafka"] = await init_kafka()

    failed = [name for name, ok in results.items() if not ok]
    logger.info(
        "init_summary",
        **{name: "ok" if ok else "failed" for name, ok in results.items()},
    )

    if failed:
        logger.error("init_failed", services=failed)
        return 1

    logger.info("init_completed")
    return 0


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Initialize rule pipeline databases",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--postgres-only",
        action="store_true",
        help="Only create the PostgreSQL tables",
    )
    parser.add_argument(
        "--skip-kafka",
        action="store_true",
        help="Do not check Kafka (events disabled)",
    )

    return parser.parse_args()


if __name__ == "__main__":
    args = parse_args()
    exit_code = asyncio.run(main(args))
    sys.exit(exit_code)
