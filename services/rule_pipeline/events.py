"""
Publication Events
==================

Non-blocking notifications for downstream consumers after a release
commits. Wired into the release builder as a post-publication hook, so a
broker outage is logged and never fails the release.

Version: 0.1.0
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

from services.rule_pipeline.release.builder import PostPublishHook
from shared.database.kafka import KafkaClient, Topics
from shared.logging import get_logger
from shared.models import Release, Rule

logger = get_logger(__name__)


class EventPublisher(Protocol):
    async def publish(self, topic: str, payload: dict[str, Any], key: str | None = None) -> None: ...


class KafkaEventPublisher:
    """Publishes events through the shared Kafka producer."""

    async def publish(self, topic: str, payload: dict[str, Any], key: str | None = None) -> None:
        await KafkaClient.publish(topic, payload, key=key)


@dataclass
class InMemoryEventPublisher:
    """Collects events in a list; used by tests and local runs."""

    events: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    async def publish(self, topic: str, payload: dict[str, Any], key: str | None = None) -> None:
        self.events.append((topic, payload))

    def topics(self) -> list[str]:
        return [topic for topic, _ in self.events]


def release_event(release: Release) -> dict[str, Any]:
    return {
        "release_id": release.id,
        "version": release.version,
        "release_type": release.release_type.value,
        "content_hash": release.content_hash,
        "rule_ids": release.rule_ids,
        "created_at": release.created_at.isoformat(),
    }


def rule_event(rule: Rule, release: Release) -> dict[str, Any]:
    return {
        "rule_id": rule.id,
        "concept_slug": rule.concept_slug,
        "risk_tier": rule.risk_tier.value,
        "value": rule.value,
        "value_type": rule.value_type,
        "effective_from": rule.effective_from.isoformat(),
        "effective_until": rule.effective_until.isoformat() if rule.effective_until else None,
        "release_id": release.id,
        "version": release.version,
    }


def publication_hook(publisher: EventPublisher) -> PostPublishHook:
    """Post-publication hook emitting one release event and one event per rule."""

    async def publish_release_events(release: Release, rules: list[Rule]) -> None:
        await publisher.publish(Topics.RELEASE_PUBLISHED, release_event(release), key=release.id)
        for rule in rules:
            await publisher.publish(
                Topics.RULE_PUBLISHED, rule_event(rule, release), key=rule.concept_slug
            )
        logger.info("publication_events_sent", release_id=release.id, rules=len(rules))

    return publish_release_events
