"""
AppliesWhen DSL
===============

Closed predicate language deciding when a rule is in effect for a context.

Operators:
- and / or: non-empty ``args`` list
- not: single ``arg``
- cmp: ``field`` compared (eq/neq/gt/gte/lt/lte) to a scalar ``value``
- in: ``field`` value is one of ``values``
- exists: ``field`` is present and not null
- between: numeric ``field`` within optional ``gte``/``lte`` bounds
- matches: string ``field`` matches regex ``pattern``
- date_in_effect: date at ``dateField`` is on or before ``on`` (or ``asOf``)
- true / false: literals

Validation is fail-closed: an invalid predicate is never replaced by a
broader one such as ``{"op": "true"}``.

Version: 0.1.0
"""

import json
import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    StringConstraints,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from services.rule_pipeline.errors import InvalidPredicateError
from shared.logging import get_logger

logger = get_logger(__name__)

MAX_REGEX_LENGTH = 100
MAX_DEPTH = 32

FIELD_PATH_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$"

FieldPath = Annotated[str, StringConstraints(pattern=FIELD_PATH_PATTERN)]
Scalar = Union[StrictBool, StrictInt, StrictFloat, StrictStr, None]
Number = Union[StrictInt, StrictFloat]

CmpOp = Literal["eq", "neq", "gt", "gte", "lt", "lte"]

# Evaluation context fields known to downstream calculators.
DEFAULT_FIELD_SCHEMA: frozenset[str] = frozenset(
    {
        "asOf",
        "entity.type",
        "entity.obrtSubtype",
        "entity.vat.status",
        "entity.activityNkd",
        "entity.location.country",
        "entity.location.county",
        "txn.kind",
        "txn.b2b",
        "txn.paymentMethod",
        "txn.amount",
        "txn.currency",
        "txn.itemCategory",
        "txn.date",
        "counters.revenueYtd",
        "counters.invoicesThisMonth",
        "flags.isAutomationRequest",
    }
)


class _Node(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


class AndPredicate(_Node):
    op: Literal["and"]
    args: list["Predicate"] = Field(..., min_length=1)


class OrPredicate(_Node):
    op: Literal["or"]
    args: list["Predicate"] = Field(..., min_length=1)


class NotPredicate(_Node):
    op: Literal["not"]
    arg: "Predicate"


class CmpPredicate(_Node):
    op: Literal["cmp"]
    field: FieldPath
    cmp: CmpOp
    value: Scalar


class InPredicate(_Node):
    op: Literal["in"]
    field: FieldPath
    values: list[Scalar] = Field(..., min_length=1)


class ExistsPredicate(_Node):
    op: Literal["exists"]
    field: FieldPath


class BetweenPredicate(_Node):
    op: Literal["between"]
    field: FieldPath
    gte: Number | None = None
    lte: Number | None = None

    @model_validator(mode="after")
    def _check_bounds(self) -> "BetweenPredicate":
        if self.gte is None and self.lte is None:
            raise ValueError("between requires at least one of gte/lte")
        if self.gte is not None and self.lte is not None and self.gte > self.lte:
            raise ValueError("between lower bound exceeds upper bound")
        return self


class MatchesPredicate(_Node):
    op: Literal["matches"]
    field: FieldPath
    pattern: StrictStr

    @field_validator("pattern")
    @classmethod
    def _check_pattern(cls, v: str) -> str:
        if len(v) > MAX_REGEX_LENGTH:
            raise ValueError(f"regex longer than {MAX_REGEX_LENGTH} characters")
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regex: {e}") from e
        return v


class DateInEffectPredicate(_Node):
    op: Literal["date_in_effect"]
    date_field: FieldPath = Field(..., alias="dateField")
    on: StrictStr | None = None

    @field_validator("on")
    @classmethod
    def _check_on(cls, v: str | None) -> str | None:
        if v is not None:
            datetime.fromisoformat(v)
        return v


class TruePredicate(_Node):
    op: Literal["true"]


class FalsePredicate(_Node):
    op: Literal["false"]


Predicate = Annotated[
    Union[
        AndPredicate,
        OrPredicate,
        NotPredicate,
        CmpPredicate,
        InPredicate,
        ExistsPredicate,
        BetweenPredicate,
        MatchesPredicate,
        DateInEffectPredicate,
        TruePredicate,
        FalsePredicate,
    ],
    Field(discriminator="op"),
]

AndPredicate.model_rebuild()
OrPredicate.model_rebuild()
NotPredicate.model_rebuild()

_ADAPTER: TypeAdapter[Predicate] = TypeAdapter(Predicate)


@dataclass(frozen=True)
class PredicateValidation:
    """Outcome of :func:`validate_applies_when`."""

    valid: bool
    error: str | None = None


# =============================================================================
# Parsing and validation
# =============================================================================


def _nesting_depth(obj: Any) -> int:
    """Depth of nested containers, computed without recursion."""
    deepest = 0
    stack: list[tuple[Any, int]] = [(obj, 1)]
    while stack:
        node, depth = stack.pop()
        if isinstance(node, Mapping):
            children: Iterable[Any] = node.values()
        elif isinstance(node, list):
            children = node
        else:
            continue
        deepest = max(deepest, depth)
        if deepest > MAX_DEPTH:
            return deepest
        stack.extend((child, depth + 1) for child in children)
    return deepest


def parse_applies_when(predicate: str | Mapping[str, Any] | Any) -> Predicate:
    """
    Parse a predicate from a JSON string or decoded object.

    Raises:
        InvalidPredicateError: On malformed JSON, unknown operators, bad
            shapes, or excessive nesting.
    """
    raw = predicate
    if isinstance(predicate, str):
        try:
            raw = json.loads(predicate)
        except json.JSONDecodeError as e:
            raise InvalidPredicateError(f"Predicate is not valid JSON: {e}") from e

    if not isinstance(raw, Mapping):
        raise InvalidPredicateError(
            f"Predicate must be an object, got {type(raw).__name__}"
        )
    if _nesting_depth(raw) > MAX_DEPTH:
        raise InvalidPredicateError(f"Predicate nested deeper than {MAX_DEPTH} levels")

    try:
        return _ADAPTER.validate_python(raw)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidPredicateError(f"Invalid predicate: {errors}") from e


def referenced_fields(predicate: Predicate) -> Iterator[str]:
    """Yield every field path a parsed predicate reads."""
    stack: list[Predicate] = [predicate]
    while stack:
        node = stack.pop()
        if isinstance(node, AndPredicate | OrPredicate):
            stack.extend(node.args)
        elif isinstance(node, NotPredicate):
            stack.append(node.arg)
        elif isinstance(node, DateInEffectPredicate):
            yield node.date_field
        elif isinstance(
            node,
            CmpPredicate | InPredicate | ExistsPredicate | BetweenPredicate | MatchesPredicate,
        ):
            yield node.field


def _is_known_field(path: str, schema: frozenset[str]) -> bool:
    # An ancestor of a known path ("entity.vat") is also addressable.
    return path in schema or any(known.startswith(path + ".") for known in schema)


def validate_applies_when(
    predicate: Any,
    schema_fields: Iterable[str] | None = None,
) -> PredicateValidation:
    """
    Validate a predicate without raising.

    Args:
        predicate: JSON string or decoded object.
        schema_fields: Optional set of valid field paths; when given, any
            reference outside it makes the predicate invalid.

    Returns:
        PredicateValidation(valid, error)
    """
    try:
        parsed = parse_applies_when(predicate)
        if schema_fields is not None:
            schema = frozenset(schema_fields)
            unknown = sorted(
                {path for path in referenced_fields(parsed) if not _is_known_field(path, schema)}
            )
            if unknown:
                return PredicateValidation(
                    valid=False,
                    error=f"Unknown field paths: {', '.join(unknown)}",
                )
    except InvalidPredicateError as e:
        return PredicateValidation(valid=False, error=e.message)
    except Exception as e:  # noqa: BLE001 - validator is total and fails closed
        logger.warning("predicate_validation_crashed", error=str(e), error_type=type(e).__name__)
        return PredicateValidation(valid=False, error=f"Predicate could not be validated: {e}")

    return PredicateValidation(valid=True)


def dump_applies_when(predicate: Predicate) -> dict[str, Any]:
    """Serialize a parsed predicate back to its wire shape."""
    return _ADAPTER.dump_python(predicate, by_alias=True)


# =============================================================================
# Evaluation
# =============================================================================


def get_field_value(context: Mapping[str, Any], path: str) -> Any:
    """Resolve a dot path; any missing segment yields None."""
    current: Any = context
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
        if current is None:
            return None
    return current


def _is_number(v: Any) -> bool:
    return isinstance(v, int | float) and not isinstance(v, bool)


def _same_kind(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool)
    if _is_number(left) and _is_number(right):
        return True
    return isinstance(left, str) and isinstance(right, str)


def _compare(left: Any, op: str, right: Any) -> bool:
    if left is None:
        return False
    if op == "eq":
        return _same_kind(left, right) and left == right
    if op == "neq":
        return not (_same_kind(left, right) and left == right)

    orderable = (_is_number(left) and _is_number(right)) or (
        isinstance(left, str) and isinstance(right, str)
    )
    if not orderable:
        return False
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    if op == "lt":
        return left < right
    if op == "lte":
        return left <= right
    return False


def _parse_instant(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _safe_match(pattern: str, value: str) -> bool:
    if len(pattern) > MAX_REGEX_LENGTH:
        logger.warning("applies_when_regex_too_long", length=len(pattern))
        return False
    try:
        return re.search(pattern, value) is not None
    except re.error:
        return False


def evaluate_applies_when(predicate: Predicate, context: Mapping[str, Any]) -> bool:
    """
    Evaluate a parsed predicate against a context.

    Missing fields evaluate to False for every leaf operator.
    """
    if isinstance(predicate, TruePredicate):
        return True
    if isinstance(predicate, FalsePredicate):
        return False
    if isinstance(predicate, AndPredicate):
        return all(evaluate_applies_when(arg, context) for arg in predicate.args)
    if isinstance(predicate, OrPredicate):
        return any(evaluate_applies_when(arg, context) for arg in predicate.args)
    if isinstance(predicate, NotPredicate):
        return not evaluate_applies_when(predicate.arg, context)

    if isinstance(predicate, CmpPredicate):
        return _compare(get_field_value(context, predicate.field), predicate.cmp, predicate.value)

    if isinstance(predicate, InPredicate):
        value = get_field_value(context, predicate.field)
        return value is not None and any(
            _same_kind(value, candidate) and value == candidate for candidate in predicate.values
        )

    if isinstance(predicate, ExistsPredicate):
        return get_field_value(context, predicate.field) is not None

    if isinstance(predicate, BetweenPredicate):
        value = get_field_value(context, predicate.field)
        if not _is_number(value):
            return False
        if predicate.gte is not None and value < predicate.gte:
            return False
        if predicate.lte is not None and value > predicate.lte:
            return False
        return True

    if isinstance(predicate, MatchesPredicate):
        value = get_field_value(context, predicate.field)
        return isinstance(value, str) and _safe_match(predicate.pattern, value)

    if isinstance(predicate, DateInEffectPredicate):
        field_value = get_field_value(context, predicate.date_field)
        check = predicate.on or context.get("asOf")
        if not isinstance(field_value, str) or not isinstance(check, str):
            return False
        field_date = _parse_instant(field_value)
        as_of = _parse_instant(check)
        if field_date is None or as_of is None:
            return False
        return field_date <= as_of

    return False
