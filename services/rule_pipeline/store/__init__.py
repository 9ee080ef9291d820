"""
Pipeline Store
==============

Persistence for the rule pipeline.

Implementations:
- InMemoryPipelineStore (tests, local runs)
- SqlAlchemyPipelineStore (PostgreSQL via SQLAlchemy async)
"""

from services.rule_pipeline.store.base import PipelineStore
from services.rule_pipeline.store.memory import InMemoryPipelineStore

__all__ = [
    "InMemoryPipelineStore",
    "PipelineStore",
]
