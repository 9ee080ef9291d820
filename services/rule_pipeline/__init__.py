"""
Regulatory Rule Pipeline
========================

Turns extracted regulatory facts into versioned, provenance-verified,
risk-tiered rules.

Stages:
- Rule Composer: fact groups -> DRAFT rules (with conflict detection)
- Tiered Review Gate: auto-approval or human review by risk tier
- Release Builder: gated, evidence-verified, atomic publication
- Job Orchestration: queues, retries, dead letters, continuous draining

Version: 0.1.0
"""

__version__ = "0.1.0"
