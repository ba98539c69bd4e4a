"""
Row filters shared by the REST query path and the change feed.

A filter is a mapping of column -> Condition (plain values mean equality),
optionally with an OR-of-AND group under the "or" key. The same object encodes
to PostgREST query params and evaluates locally against a row.
"""

import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

OR_KEY = "or"


@dataclass(frozen=True)
class Condition:
    op: str
    value: Any

    def encode(self) -> str:
        if self.op == "in":
            return "in.(" + ",".join(str(v) for v in self.value) + ")"
        return f"{self.op}.{self.value}"

    def test(self, actual: Any) -> bool:
        if self.op == "eq":
            return actual is not None and str(actual) == str(self.value)
        if self.op == "neq":
            return actual is None or str(actual) != str(self.value)
        if self.op == "in":
            return actual is not None and str(actual) in {str(v) for v in self.value}
        if self.op == "ilike":
            if actual is None:
                return False
            pattern = "^" + ".*".join(re.escape(part) for part in str(self.value).split("%")) + "$"
            return re.match(pattern, str(actual), re.IGNORECASE | re.DOTALL) is not None
        raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass(frozen=True)
class AnyOf:
    """OR over groups; each group is an AND of column conditions."""
    groups: tuple[tuple[tuple[str, Condition], ...], ...]

    def encode(self) -> str:
        parts = []
        for group in self.groups:
            inner = ",".join(f"{col}.{cond.encode()}" for col, cond in group)
            parts.append(f"and({inner})" if len(group) > 1 else inner)
        return "(" + ",".join(parts) + ")"

    def test(self, row: Mapping[str, Any]) -> bool:
        return any(all(cond.test(row.get(col)) for col, cond in group) for group in self.groups)


def eq(value: Any) -> Condition:
    return Condition("eq", value)


def neq(value: Any) -> Condition:
    return Condition("neq", value)


def in_(values: Sequence[Any]) -> Condition:
    return Condition("in", tuple(values))


def ilike(pattern: str) -> Condition:
    return Condition("ilike", pattern)


def any_of(*groups: Mapping[str, Any]) -> AnyOf:
    return AnyOf(tuple(tuple((col, _as_condition(v)) for col, v in g.items()) for g in groups))


def between(user_id: str, partner_id: str) -> dict[str, Any]:
    """Messages in either direction between two participants."""
    return {OR_KEY: any_of(
        {"sender_id": user_id, "receiver_id": partner_id},
        {"sender_id": partner_id, "receiver_id": user_id},
    )}


def involving(user_id: str) -> dict[str, Any]:
    return {OR_KEY: any_of({"sender_id": user_id}, {"receiver_id": user_id})}


def _as_condition(value: Any) -> Condition:
    return value if isinstance(value, Condition) else eq(value)


def to_params(filters: Optional[Mapping[str, Any]], order: Optional[str] = None) -> dict[str, str]:
    params: dict[str, str] = {}
    for column, value in (filters or {}).items():
        if column == OR_KEY:
            params[OR_KEY] = value.encode()
        else:
            params[column] = _as_condition(value).encode()
    if order:
        params["order"] = order
    return params


def matches(row: Mapping[str, Any], filters: Optional[Mapping[str, Any]]) -> bool:
    for column, value in (filters or {}).items():
        if column == OR_KEY:
            if not value.test(row):
                return False
        elif not _as_condition(value).test(row.get(column)):
            return False
    return True
