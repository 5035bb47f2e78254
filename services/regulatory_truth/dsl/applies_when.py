"""
AppliesWhen DSL
===============

Serializable boolean predicates over a business context, used to
encode when a rule's value holds.

A predicate is a tree of tagged nodes, discriminated on ``op``::

    {"op": "and", "args": [
        {"op": "cmp", "field": "entity.type", "cmp": "==", "value": "OBRT"},
        {"op": "between", "field": "counters.revenue_ytd", "lte": 40000},
        {"op": "date_in_effect"}
    ]}

Trees are validated when they are built (``parse_predicate``) and
evaluation is total: a leaf whose field is missing from the context is
false, and nothing raises while evaluating a valid tree.

Version: 0.1.0
"""

import json
import re
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from services.regulatory_truth.errors import InvalidPredicate


MAX_PATTERN_LENGTH = 100

FIELD_PATH = r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$"

CMP_ALIASES = {
    "lt": "<",
    "lte": "<=",
    "eq": "==",
    "neq": "!=",
    "gte": ">=",
    "gt": ">",
}

Scalar = bool | int | float | str
CmpOp = Literal["<", "<=", "==", "!=", ">=", ">"]


class _Node(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class TruePredicate(_Node):
    op: Literal["true"] = "true"


class FalsePredicate(_Node):
    op: Literal["false"] = "false"


class AndPredicate(_Node):
    op: Literal["and"] = "and"
    args: list["Predicate"] = Field(min_length=1)


class OrPredicate(_Node):
    op: Literal["or"] = "or"
    args: list["Predicate"] = Field(min_length=1)


class NotPredicate(_Node):
    op: Literal["not"] = "not"
    arg: "Predicate"


class CmpPredicate(_Node):
    op: Literal["cmp"] = "cmp"
    field: str = Field(pattern=FIELD_PATH)
    cmp: CmpOp
    value: Scalar

    @field_validator("cmp", mode="before")
    @classmethod
    def _normalize_alias(cls, v: Any) -> Any:
        return CMP_ALIASES.get(v, v) if isinstance(v, str) else v


class InPredicate(_Node):
    op: Literal["in"] = "in"
    field: str = Field(pattern=FIELD_PATH)
    values: list[Scalar] = Field(min_length=1)


class ExistsPredicate(_Node):
    op: Literal["exists"] = "exists"
    field: str = Field(pattern=FIELD_PATH)


class BetweenPredicate(_Node):
    op: Literal["between"] = "between"
    field: str = Field(pattern=FIELD_PATH)
    gte: Scalar | None = None
    lte: Scalar | None = None

    @model_validator(mode="after")
    def _needs_a_bound(self) -> "BetweenPredicate":
        if self.gte is None and self.lte is None:
            raise ValueError("between needs at least one of gte/lte")
        return self


class MatchesPredicate(_Node):
    op: Literal["matches"] = "matches"
    field: str = Field(pattern=FIELD_PATH)
    pattern: str = Field(min_length=1, max_length=MAX_PATTERN_LENGTH)

    _compiled: re.Pattern[str] = PrivateAttr()

    @field_validator("pattern")
    @classmethod
    def _compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regex: {e}") from e
        return v

    def model_post_init(self, __context: Any) -> None:
        self._compiled = re.compile(self.pattern)

    @property
    def compiled(self) -> re.Pattern[str]:
        return self._compiled


class DateInEffectPredicate(_Node):
    """Context date (``field``, default ``as_of``) falls inside a window.

    With neither bound set, the window is the owning rule's effective
    window, supplied at evaluation time. A context without the date never
    matches.
    """

    op: Literal["date_in_effect"] = "date_in_effect"
    field: str = Field(default="as_of", pattern=FIELD_PATH)
    effective_from: date | None = None
    effective_until: date | None = None

    @model_validator(mode="after")
    def _ordered(self) -> "DateInEffectPredicate":
        if (
            self.effective_from is not None
            and self.effective_until is not None
            and self.effective_from > self.effective_until
        ):
            raise ValueError("effective_from is after effective_until")
        return self


Predicate = Annotated[
    Union[
        TruePredicate,
        FalsePredicate,
        AndPredicate,
        OrPredicate,
        NotPredicate,
        CmpPredicate,
        InPredicate,
        ExistsPredicate,
        BetweenPredicate,
        MatchesPredicate,
        DateInEffectPredicate,
    ],
    Field(discriminator="op"),
]

AndPredicate.model_rebuild()
OrPredicate.model_rebuild()
NotPredicate.model_rebuild()

_ADAPTER: TypeAdapter[Predicate] = TypeAdapter(Predicate)

OPERATORS = frozenset(
    {"true", "false", "and", "or", "not", "cmp", "in", "exists", "between", "matches", "date_in_effect"}
)


# =============================================================================
# Construction
# =============================================================================


def parse_predicate(data: Any) -> Predicate:
    """
    Build a validated predicate tree.

    Args:
        data: dict tree, JSON string, or an already-built predicate

    Raises:
        InvalidPredicate: unknown operator or malformed shape
    """
    if isinstance(data, _Node):
        return data  # type: ignore[return-value]
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise InvalidPredicate(f"Predicate is not valid JSON: {e}") from e
    if not isinstance(data, Mapping):
        raise InvalidPredicate(f"Predicate must be an object, got {type(data).__name__}")
    try:
        return _ADAPTER.validate_python(dict(data))
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        raise InvalidPredicate(
            f"Invalid predicate: {errors[0]['msg'] if errors else e}",
            errors=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in errors],
        ) from e


def to_dict(predicate: Predicate) -> dict[str, Any]:
    """Serialize a tree to plain JSON-compatible dicts."""
    return predicate.model_dump(mode="json", exclude_none=True)


def is_valid(data: Any) -> bool:
    try:
        parse_predicate(data)
    except InvalidPredicate:
        return False
    return True


# Helper constructors


def always() -> TruePredicate:
    return TruePredicate()


def never() -> FalsePredicate:
    return FalsePredicate()


def all_of(*predicates: Predicate) -> AndPredicate:
    return AndPredicate(args=list(predicates))


def any_of(*predicates: Predicate) -> OrPredicate:
    return OrPredicate(args=list(predicates))


def negate(predicate: Predicate) -> NotPredicate:
    return NotPredicate(arg=predicate)


def field_equals(field: str, value: Scalar) -> CmpPredicate:
    return CmpPredicate(field=field, cmp="==", value=value)


def field_compare(field: str, op: str, value: Scalar) -> CmpPredicate:
    return CmpPredicate(field=field, cmp=op, value=value)  # type: ignore[arg-type]


def field_in(field: str, values: list[Scalar]) -> InPredicate:
    return InPredicate(field=field, values=values)


def field_exists(field: str) -> ExistsPredicate:
    return ExistsPredicate(field=field)


def field_between(
    field: str,
    gte: Scalar | None = None,
    lte: Scalar | None = None,
) -> BetweenPredicate:
    return BetweenPredicate(field=field, gte=gte, lte=lte)


def in_effect(
    effective_from: date | None = None,
    effective_until: date | None = None,
    field: str = "as_of",
) -> DateInEffectPredicate:
    return DateInEffectPredicate(
        field=field,
        effective_from=effective_from,
        effective_until=effective_until,
    )


# =============================================================================
# Evaluation
# =============================================================================

_MISSING = object()

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def resolve_field(context: Mapping[str, Any], path: str) -> Any:
    """Follow a dotted path through nested mappings; ``_MISSING`` if absent."""
    current: Any = context
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _as_decimal(value: Any) -> Decimal | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, Decimal)):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            number = Decimal(value.strip())
        except InvalidOperation:
            return None
        return number if number.is_finite() else None
    return None


def _as_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and _ISO_DATE.match(value):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def _compare(left: Any, op: str, right: Any) -> bool:
    left_num, right_num = _as_decimal(left), _as_decimal(right)
    if left_num is not None and right_num is not None:
        a: Any = left_num
        b: Any = right_num
    else:
        left_date, right_date = _as_date(left), _as_date(right)
        if left_date is not None and right_date is not None:
            a, b = left_date, right_date
        else:
            a, b = left, right

    try:
        if op == "==":
            return bool(a == b)
        if op == "!=":
            return bool(a != b)
        if type(a) is not type(b):
            return False
        if op == "<":
            return bool(a < b)
        if op == "<=":
            return bool(a <= b)
        if op == ">":
            return bool(a > b)
        if op == ">=":
            return bool(a >= b)
    except TypeError:
        return False
    return False


def evaluate(
    predicate: Predicate | Mapping[str, Any],
    context: Mapping[str, Any],
    window: tuple[date, date | None] | None = None,
) -> bool:
    """
    Evaluate a predicate against a business context.

    Args:
        predicate: predicate tree (dicts are parsed first)
        context: nested mapping of field name to value
        window: owning rule's ``(effective_from, effective_until)``, used by
            ``date_in_effect`` nodes without explicit bounds

    Returns:
        True when the predicate holds
    """
    if not isinstance(predicate, _Node):
        predicate = parse_predicate(predicate)
    return _eval(predicate, context, window)  # type: ignore[arg-type]


def _eval(node: Predicate, context: Mapping[str, Any], window: tuple[date, date | None] | None) -> bool:
    if isinstance(node, TruePredicate):
        return True
    if isinstance(node, FalsePredicate):
        return False
    if isinstance(node, AndPredicate):
        return all(_eval(arg, context, window) for arg in node.args)
    if isinstance(node, OrPredicate):
        return any(_eval(arg, context, window) for arg in node.args)
    if isinstance(node, NotPredicate):
        return not _eval(node.arg, context, window)
    if isinstance(node, DateInEffectPredicate):
        return _eval_date_in_effect(node, context, window)

    value = resolve_field(context, node.field)
    if value is _MISSING or value is None:
        return False

    if isinstance(node, ExistsPredicate):
        return True
    if isinstance(node, CmpPredicate):
        return _compare(value, node.cmp, node.value)
    if isinstance(node, InPredicate):
        return any(_compare(value, "==", candidate) for candidate in node.values)
    if isinstance(node, BetweenPredicate):
        if node.gte is not None and not _compare(value, ">=", node.gte):
            return False
        if node.lte is not None and not _compare(value, "<=", node.lte):
            return False
        return True
    if isinstance(node, MatchesPredicate):
        return isinstance(value, str) and node.compiled.search(value) is not None
    return False


def _eval_date_in_effect(
    node: DateInEffectPredicate,
    context: Mapping[str, Any],
    window: tuple[date, date | None] | None,
) -> bool:
    raw = resolve_field(context, node.field)
    if raw is _MISSING or raw is None:
        return False
    on = _as_date(raw)
    if on is None:
        return False

    if node.effective_from is not None or node.effective_until is not None:
        start, end = node.effective_from, node.effective_until
    elif window is not None:
        start, end = window
    else:
        return True

    if start is not None and on < start:
        return False
    if end is not None and on > end:
        return False
    return True


# =============================================================================
# Scope overlap
# =============================================================================


class _FieldRange:
    """Accumulated constraints on one field across a conjunction."""

    def __init__(self) -> None:
        self.allowed: list[Any] | None = None
        self.excluded: list[Any] = []
        self.lower: tuple[Any, bool] | None = None
        self.upper: tuple[Any, bool] | None = None
        self.unknown = False

    def restrict_to(self, values: list[Any]) -> None:
        if self.allowed is None:
            self.allowed = list(values)
        else:
            self.allowed = [v for v in self.allowed if any(_compare(v, "==", w) for w in values)]

    def bound_below(self, value: Any, inclusive: bool) -> None:
        if self.lower is None or _compare(value, ">", self.lower[0]):
            self.lower = (value, inclusive)
        elif _compare(value, "==", self.lower[0]):
            self.lower = (value, inclusive and self.lower[1])

    def bound_above(self, value: Any, inclusive: bool) -> None:
        if self.upper is None or _compare(value, "<", self.upper[0]):
            self.upper = (value, inclusive)
        elif _compare(value, "==", self.upper[0]):
            self.upper = (value, inclusive and self.upper[1])

    def _inside(self, value: Any) -> bool:
        if self.lower is not None:
            op = ">=" if self.lower[1] else ">"
            if not _compare(value, op, self.lower[0]):
                return False
        if self.upper is not None:
            op = "<=" if self.upper[1] else "<"
            if not _compare(value, op, self.upper[0]):
                return False
        return not any(_compare(value, "==", x) for x in self.excluded)

    def is_empty(self) -> bool:
        if self.unknown:
            return False
        if self.allowed is not None:
            return not any(self._inside(v) for v in self.allowed)
        if self.lower is not None and self.upper is not None:
            lo, lo_inc = self.lower
            hi, hi_inc = self.upper
            if _compare(lo, ">", hi):
                return True
            if _compare(lo, "==", hi) and not (lo_inc and hi_inc):
                return True
        return False


def _conjuncts(node: Predicate) -> list[Predicate]:
    if isinstance(node, AndPredicate):
        return [leaf for arg in node.args for leaf in _conjuncts(arg)]
    return [node]


def _comparable(a: Any, b: Any) -> bool:
    if _as_decimal(a) is not None and _as_decimal(b) is not None:
        return True
    if _as_date(a) is not None and _as_date(b) is not None:
        return True
    return type(a) is type(b)


def may_overlap(a: Predicate | Mapping[str, Any], b: Predicate | Mapping[str, Any]) -> bool:
    """
    Conservatively decide whether two predicates can hold together.

    Returns False only when the conjunction is provably unsatisfiable
    (disjoint equality sets, disjoint ranges, explicit disjoint date
    windows, or a constant ``false``). Anything the analysis does not
    understand counts as overlapping.
    """
    left = a if isinstance(a, _Node) else parse_predicate(a)
    right = b if isinstance(b, _Node) else parse_predicate(b)

    if isinstance(left, OrPredicate):
        return any(may_overlap(branch, right) for branch in left.args)
    if isinstance(right, OrPredicate):
        return any(may_overlap(left, branch) for branch in right.args)

    ranges: dict[str, _FieldRange] = {}
    for leaf in [*_conjuncts(left), *_conjuncts(right)]:  # type: ignore[arg-type]
        if isinstance(leaf, FalsePredicate):
            return False
        if isinstance(leaf, (CmpPredicate, InPredicate, BetweenPredicate, DateInEffectPredicate)):
            rng = ranges.setdefault(leaf.field, _FieldRange())
            _constrain(rng, leaf)
    return not any(rng.is_empty() for rng in ranges.values())


def _constrain(rng: _FieldRange, leaf: Any) -> None:
    if isinstance(leaf, InPredicate):
        rng.restrict_to(leaf.values)
        return
    if isinstance(leaf, DateInEffectPredicate):
        if leaf.effective_from is not None:
            rng.bound_below(leaf.effective_from.isoformat(), True)
        if leaf.effective_until is not None:
            rng.bound_above(leaf.effective_until.isoformat(), True)
        return

    bounds: list[tuple[str, Any]] = []
    if isinstance(leaf, BetweenPredicate):
        if leaf.gte is not None:
            bounds.append((">=", leaf.gte))
        if leaf.lte is not None:
            bounds.append(("<=", leaf.lte))
    else:
        bounds.append((leaf.cmp, leaf.value))

    for op, value in bounds:
        others = [x for x in (rng.lower, rng.upper) if x is not None] + [
            (v, True) for v in (rng.allowed or [])
        ]
        if any(not _comparable(value, other[0]) for other in others):
            rng.unknown = True
            return
        if op == "==":
            rng.restrict_to([value])
        elif op == "!=":
            rng.excluded.append(value)
        elif op in (">", ">="):
            rng.bound_below(value, op == ">=")
        else:
            rng.bound_above(value, op == "<=")
