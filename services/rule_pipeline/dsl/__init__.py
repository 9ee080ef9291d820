"""
Applicability DSL
=================

Parsing, validation and evaluation of ``appliesWhen`` predicates.
"""

from services.rule_pipeline.dsl.applies_when import (
    DEFAULT_FIELD_SCHEMA,
    Predicate,
    PredicateValidation,
    dump_applies_when,
    evaluate_applies_when,
    parse_applies_when,
    referenced_fields,
    validate_applies_when,
)

__all__ = [
    "DEFAULT_FIELD_SCHEMA",
    "Predicate",
    "PredicateValidation",
    "dump_applies_when",
    "evaluate_applies_when",
    "parse_applies_when",
    "referenced_fields",
    "validate_applies_when",
]
