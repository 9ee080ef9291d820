"""Tests for the appliesWhen predicate DSL."""

import json
from typing import Any

import pytest

from services.rule_pipeline.dsl import (
    dump_applies_when,
    evaluate_applies_when,
    parse_applies_when,
    referenced_fields,
    validate_applies_when,
)
from services.rule_pipeline.errors import InvalidPredicateError


@pytest.fixture
def context() -> dict[str, Any]:
    """Evaluation context for a VAT-registered obrt."""
    return {
        "asOf": "2025-03-01",
        "entity": {
            "type": "OBRT",
            "vat": {"status": "registered"},
            "location": {"country": "HR"},
        },
        "txn": {"amount": 120.5, "currency": "EUR", "b2b": True, "date": "2025-02-10"},
        "counters": {"revenueYtd": 39000},
    }


def evaluate(predicate: dict[str, Any], context: dict[str, Any]) -> bool:
    return evaluate_applies_when(parse_applies_when(predicate), context)


class TestParsing:
    """Tests for parse_applies_when."""

    def test_parses_json_string(self) -> None:
        parsed = parse_applies_when(json.dumps({"op": "true"}))
        assert dump_applies_when(parsed) == {"op": "true"}

    def test_round_trips_nested(self) -> None:
        predicate = {
            "op": "and",
            "args": [
                {"op": "cmp", "field": "entity.type", "cmp": "eq", "value": "OBRT"},
                {"op": "not", "arg": {"op": "exists", "field": "txn.kind"}},
                {"op": "date_in_effect", "dateField": "txn.date", "on": None},
            ],
        }
        assert dump_applies_when(parse_applies_when(predicate)) == predicate

    @pytest.mark.parametrize(
        "predicate",
        [
            {"op": "xor", "args": [{"op": "true"}]},
            {"op": "and", "args": []},
            {"op": "cmp", "field": "entity.type", "cmp": "like", "value": "x"},
            {"op": "cmp", "field": "entity.type", "cmp": "eq", "value": {"nested": 1}},
            {"op": "in", "field": "entity.type", "values": []},
            {"op": "between", "field": "txn.amount"},
            {"op": "between", "field": "txn.amount", "gte": 10, "lte": 1},
            {"op": "matches", "field": "entity.type", "pattern": "("},
            {"op": "matches", "field": "entity.type", "pattern": "a" * 101},
            {"op": "exists", "field": "entity..type"},
            {"op": "true", "extra": 1},
            {"op": "date_in_effect", "dateField": "txn.date", "on": "not-a-date"},
        ],
    )
    def test_rejects_malformed(self, predicate: dict[str, Any]) -> None:
        with pytest.raises(InvalidPredicateError):
            parse_applies_when(predicate)

    def test_rejects_invalid_json(self) -> None:
        with pytest.raises(InvalidPredicateError):
            parse_applies_when("{not json")

    def test_rejects_non_object(self) -> None:
        with pytest.raises(InvalidPredicateError):
            parse_applies_when([{"op": "true"}])

    def test_rejects_excessive_nesting(self) -> None:
        predicate: dict[str, Any] = {"op": "true"}
        for _ in range(40):
            predicate = {"op": "not", "arg": predicate}
        with pytest.raises(InvalidPredicateError):
            parse_applies_when(predicate)

    def test_referenced_fields(self) -> None:
        parsed = parse_applies_when(
            {
                "op": "or",
                "args": [
                    {"op": "exists", "field": "txn.kind"},
                    {"op": "date_in_effect", "dateField": "txn.date"},
                ],
            }
        )
        assert sorted(referenced_fields(parsed)) == ["txn.date", "txn.kind"]


class TestValidation:
    """Tests for validate_applies_when."""

    def test_valid(self) -> None:
        result = validate_applies_when({"op": "exists", "field": "entity.vat.status"})
        assert result.valid
        assert result.error is None

    def test_invalid_never_raises(self) -> None:
        result = validate_applies_when({"op": "nope"})
        assert not result.valid
        assert result.error

    def test_unknown_field_against_schema(self) -> None:
        result = validate_applies_when(
            {"op": "exists", "field": "entity.shoeSize"},
            schema_fields={"entity.type", "entity.vat.status"},
        )
        assert not result.valid
        assert "entity.shoeSize" in (result.error or "")

    def test_ancestor_of_known_field_allowed(self) -> None:
        result = validate_applies_when(
            {"op": "exists", "field": "entity.vat"},
            schema_fields={"entity.vat.status"},
        )
        assert result.valid

    @pytest.mark.parametrize("value", [None, 42, "garbage", ["op"]])
    def test_garbage_input(self, value: Any) -> None:
        assert not validate_applies_when(value).valid


class TestEvaluation:
    """Tests for evaluate_applies_when."""

    def test_literals(self, context: dict[str, Any]) -> None:
        assert evaluate({"op": "true"}, context)
        assert not evaluate({"op": "false"}, context)

    def test_cmp_eq(self, context: dict[str, Any]) -> None:
        assert evaluate(
            {"op": "cmp", "field": "entity.vat.status", "cmp": "eq", "value": "registered"},
            context,
        )

    def test_cmp_numeric(self, context: dict[str, Any]) -> None:
        assert evaluate(
            {"op": "cmp", "field": "counters.revenueYtd", "cmp": "lt", "value": 40000},
            context,
        )
        assert not evaluate(
            {"op": "cmp", "field": "counters.revenueYtd", "cmp": "gte", "value": 40000},
            context,
        )

    def test_cmp_strict_kinds(self, context: dict[str, Any]) -> None:
        """A string never equals a number and a bool never equals an int."""
        assert not evaluate(
            {"op": "cmp", "field": "counters.revenueYtd", "cmp": "eq", "value": "39000"},
            context,
        )
        assert not evaluate({"op": "cmp", "field": "txn.b2b", "cmp": "eq", "value": 1}, context)
        assert evaluate({"op": "cmp", "field": "txn.b2b", "cmp": "eq", "value": True}, context)

    def test_missing_field_is_false(self, context: dict[str, Any]) -> None:
        for predicate in (
            {"op": "cmp", "field": "txn.kind", "cmp": "eq", "value": "SALE"},
            {"op": "cmp", "field": "txn.kind", "cmp": "neq", "value": "SALE"},
            {"op": "in", "field": "txn.kind", "values": ["SALE"]},
            {"op": "exists", "field": "txn.kind"},
            {"op": "between", "field": "txn.kind", "gte": 1},
            {"op": "matches", "field": "txn.kind", "pattern": ".*"},
            {"op": "date_in_effect", "dateField": "txn.missing"},
        ):
            assert not evaluate(predicate, context), predicate

    def test_in(self, context: dict[str, Any]) -> None:
        assert evaluate({"op": "in", "field": "txn.currency", "values": ["EUR", "HRK"]}, context)
        assert not evaluate({"op": "in", "field": "txn.currency", "values": ["USD"]}, context)

    def test_between(self, context: dict[str, Any]) -> None:
        assert evaluate({"op": "between", "field": "txn.amount", "gte": 100, "lte": 200}, context)
        assert not evaluate({"op": "between", "field": "txn.amount", "lte": 100}, context)

    def test_matches(self, context: dict[str, Any]) -> None:
        assert evaluate({"op": "matches", "field": "entity.type", "pattern": "^OB"}, context)

    def test_date_in_effect_uses_as_of(self, context: dict[str, Any]) -> None:
        assert evaluate({"op": "date_in_effect", "dateField": "txn.date"}, context)
        assert not evaluate(
            {"op": "date_in_effect", "dateField": "txn.date", "on": "2025-01-01"},
            context,
        )

    def test_boolean_combinators(self, context: dict[str, Any]) -> None:
        registered = {"op": "cmp", "field": "entity.vat.status", "cmp": "eq", "value": "registered"}
        foreign = {"op": "cmp", "field": "entity.location.country", "cmp": "neq", "value": "HR"}
        assert not evaluate({"op": "and", "args": [registered, foreign]}, context)
        assert evaluate({"op": "or", "args": [registered, foreign]}, context)
        assert evaluate({"op": "not", "arg": foreign}, context)
