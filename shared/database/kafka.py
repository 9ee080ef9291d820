"""
Kafka Client
============

Async Kafka producer for downstream publication events. Consumers of the
rule pipeline (search, embeddings, content sync) subscribe to the topics
below; the pipeline itself only produces.

Version: 0.1.0
"""

import json
import time
from typing import Any

from aiokafka import AIOKafkaProducer

from shared.config import settings
from shared.logging import get_logger

logger = get_logger(__name__)


class Topics:
    """Kafka topic names."""

    RELEASE_PUBLISHED = "rulepipe.release.published"
    RULE_PUBLISHED = "rulepipe.rule.published"
    DEAD_LETTERS = "rulepipe.jobs.dead_letters"
    ALERTS = "rulepipe.alerts"


def _encode(value: str | bytes | None) -> bytes | None:
    if isinstance(value, str):
        return value.encode("utf-8")
    return value


class KafkaClient:
    """
    Async Kafka producer wrapper.

    One producer per process, created lazily and stopped by ``close()``.
    """

    _producer: AIOKafkaProducer | None = None

    @classmethod
    async def get_producer(cls) -> AIOKafkaProducer:
        """Get or start the shared producer."""
        if cls._producer is None:
            cls._producer = AIOKafkaProducer(
                bootstrap_servers=settings.kafka.bootstrap_servers,
                security_protocol=settings.kafka.security_protocol,
                value_serializer=_encode,
                key_serializer=_encode,
                compression_type="gzip",
                acks="all",
            )
            await cls._producer.start()
            logger.info(
                "kafka_producer_created",
                bootstrap_servers=settings.kafka.bootstrap_servers,
            )
        return cls._producer

    @classmethod
    async def close(cls) -> None:
        if cls._producer is not None:
            await cls._producer.stop()
            cls._producer = None
            logger.info("kafka_producer_closed")

    @classmethod
    async def health_check(cls) -> dict[str, Any]:
        """
        Check Kafka health.

        Returns:
            dict with status and broker count
        """
        try:
            start = time.perf_counter()
            producer = await cls.get_producer()
            metadata = await producer.client.fetch_all_metadata()
            latency_ms = (time.perf_counter() - start) * 1000
            return {
                "status": "healthy",
                "latency_ms": round(latency_ms, 2),
                "brokers": len(metadata.brokers()),
            }
        except Exception as e:
            logger.error("kafka_health_check_failed", error=str(e))
            return {"status": "unhealthy", "error": str(e)}

    @classmethod
    async def publish(
        cls,
        topic: str,
        value: str | bytes | dict[str, Any],
        key: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """
        Publish one message and wait for the broker acknowledgement.

        Args:
            topic: Topic name
            value: Message value; dicts are sent as JSON
            key: Optional partitioning key
            headers: Optional message headers
        """
        producer = await cls.get_producer()

        if isinstance(value, dict):
            value = json.dumps(value, default=str)

        kafka_headers = None
        if headers:
            kafka_headers = [(k, v.encode("utf-8")) for k, v in headers.items()]

        await producer.send_and_wait(topic, value=value, key=key, headers=kafka_headers)
        logger.debug("kafka_message_published", topic=topic, key=key)
