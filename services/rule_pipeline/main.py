"""
Rule Pipeline CLI
=================

Command surface for operators and schedulers.

Usage:
    python -m services.rule_pipeline.main compose fact_a fact_b
    python -m services.rule_pipeline.main review-sweep
    python -m services.rule_pipeline.main approve rule_123 --approver alice
    python -m services.rule_pipeline.main reject rule_123 --reason "wrong value"
    python -m services.rule_pipeline.main resolve-conflict conflict_9 --resolver bob --note "LAW wins"
    python -m services.rule_pipeline.main release [--rule-id rule_1 --rule-id rule_2]
    python -m services.rule_pipeline.main status
    python -m services.rule_pipeline.main drain --max-cycles 100

Version: 0.1.0
"""

import argparse
import asyncio
import json
import sys
from typing import Any

from services.rule_pipeline.errors import PipelineError
from services.rule_pipeline.events import KafkaEventPublisher
from services.rule_pipeline.jobs import Job, RedisRateLimiter
from services.rule_pipeline.pipeline import RulePipeline, Stage
from services.rule_pipeline.reasoning import LLMReasoner
from services.rule_pipeline.store.sql import SqlAlchemyPipelineStore
from services.rule_pipeline.taxonomy import TaxonomySnapshot
from shared.config import settings
from shared.database import KafkaClient, PostgresClient, RedisClient
from shared.logging import get_logger, setup_logging

logger = get_logger(__name__)


def build_pipeline(args: argparse.Namespace) -> RulePipeline:
    """Production wiring: PostgreSQL store, LLM reasoning, Kafka events."""
    rate_limiters = None
    if args.shared_rate_limit:
        rate_limiters = {
            stage: RedisRateLimiter(
                stage,
                settings.queue.rate_limit_jobs,
                settings.queue.rate_limit_window_seconds,
            )
            for stage in Stage.ALL
        }

    return RulePipeline(
        store=SqlAlchemyPipelineStore(),
        reason=LLMReasoner(temperature=settings.llm.temperature),
        taxonomy=TaxonomySnapshot(blocklisted_domains=settings.composer.blocklist),
        settings=settings,
        publisher=None if args.no_events else KafkaEventPublisher(),
        rate_limiters=rate_limiters,
    )


async def job_summary(pipeline: RulePipeline, job: Job | None) -> dict[str, Any]:
    if job is None:
        return {"status": "skipped"}
    current = await pipeline.queues[job.stage].get(job.id) or job
    return {
        "job_id": current.id,
        "stage": current.stage,
        "status": current.status.value,
        "attempts": current.attempts,
        "result": current.result,
        "error": current.last_error,
    }


async def run_command(pipeline: RulePipeline, args: argparse.Namespace) -> Any:
    if args.command == "compose":
        job = await pipeline.trigger_composition(args.fact_ids)
        await pipeline.workers[Stage.COMPOSE].run_once()
        return await job_summary(pipeline, job)

    if args.command == "review-sweep":
        job = await pipeline.trigger_review_sweep()
        await pipeline.workers[Stage.REVIEW].run_once()
        return await job_summary(pipeline, job)

    if args.command == "approve":
        rule = await pipeline.approve(args.rule_id, args.approver)
        return {"rule_id": rule.id, "status": rule.status.value}

    if args.command == "reject":
        rule = await pipeline.reject(args.rule_id, args.reason, args.reviewer)
        return {"rule_id": rule.id, "status": rule.status.value}

    if args.command == "resolve-conflict":
        conflict = await pipeline.resolve_conflict(args.conflict_id, args.resolver, args.note)
        return {"conflict_id": conflict.id, "status": conflict.status.value}

    if args.command == "release":
        job = await pipeline.trigger_release(args.rule_ids or None)
        if job is not None:
            await pipeline.workers[Stage.RELEASE].run_once()
        return await job_summary(pipeline, job)

    if args.command == "status":
        return (await pipeline.status()).to_dict()

    if args.command == "drain":
        stats = await pipeline.drain(max_cycles=args.max_cycles)
        return {"cycles": stats.cycles, "items": stats.items, "errors": stats.errors}

    raise ValueError(f"Unknown command: {args.command}")


async def main(args: argparse.Namespace) -> int:
    pipeline = build_pipeline(args)
    try:
        output = await run_command(pipeline, args)
    except PipelineError as e:
        logger.error("command_failed", command=args.command, code=e.code, error=e.message)
        print(json.dumps(e.to_dict(), indent=2, default=str))
        return 1
    finally:
        await PostgresClient.close()
        await RedisClient.close()
        await KafkaClient.close()

    print(json.dumps(output, indent=2, default=str))
    return 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="rule-pipeline",
        description="Regulatory rule pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--shared-rate-limit",
        action="store_true",
        help="Share queue rate limits across workers through Redis",
    )
    parser.add_argument(
        "--no-events",
        action="store_true",
        help="Do not publish downstream Kafka events",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    compose = sub.add_parser("compose", help="Compose a rule from a fact group")
    compose.add_argument("fact_ids", nargs="+")

    sub.add_parser("review-sweep", help="Route every DRAFT/PENDING_REVIEW rule")

    approve = sub.add_parser("approve", help="Approve a rule as a human reviewer")
    approve.add_argument("rule_id")
    approve.add_argument("--approver", required=True)

    reject = sub.add_parser("reject", help="Reject a rule")
    reject.add_argument("rule_id")
    reject.add_argument("--reason", required=True)
    reject.add_argument("--reviewer")

    resolve = sub.add_parser("resolve-conflict", help="Record a conflict resolution")
    resolve.add_argument("conflict_id")
    resolve.add_argument("--resolver", required=True)
    resolve.add_argument("--note", required=True)

    release = sub.add_parser("release", help="Publish APPROVED rules")
    release.add_argument("--rule-id", dest="rule_ids", action="append", default=[])

    sub.add_parser("status", help="Show pipeline status")

    drain = sub.add_parser("drain", help="Continuously drain pending work")
    drain.add_argument("--max-cycles", type=int, default=None)

    return parser.parse_args(argv)


def cli() -> None:
    setup_logging(
        log_level=settings.log_level.value,
        json_logs=settings.is_production,
        service_name=settings.service_name,
    )
    sys.exit(asyncio.run(main(parse_args())))


if __name__ == "__main__":
    cli()
