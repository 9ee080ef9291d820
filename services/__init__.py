"""
Rule Pipeline Services
======================

Services:
- rule_pipeline: composition, tiered review and release of regulatory rules
"""

__all__ = [
    "rule_pipeline",
]
