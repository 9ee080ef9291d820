"""
Database Module
===============

Async clients for the pipeline's backing services.

Clients:
- PostgreSQL (asyncpg + SQLAlchemy): pipeline store
- Redis (redis.asyncio): shared rate limits for the job layer
- Kafka (aiokafka): downstream publication events
"""

from shared.database.kafka import KafkaClient, Topics
from shared.database.postgres import Base, PostgresClient
from shared.database.redis import RedisClient

__all__ = [
    # PostgreSQL
    "Base",
    "PostgresClient",
    # Redis
    "RedisClient",
    # Kafka
    "KafkaClient",
    "Topics",
]
