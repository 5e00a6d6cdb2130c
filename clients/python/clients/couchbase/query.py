"""
Structured WHERE conditions compiled to parameterized N1QL.

Operations describe what they want with ``where(...)`` conditions instead of
hand-building statements, so every query goes through named parameters and
datetime comparisons are done on epoch millis rather than on ISO strings.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

_COMPARISONS = ("=", "!=", "<", "<=", ">", ">=")
_OPERATORS = _COMPARISONS + ("IN", "IS NULL", "IS NOT NULL")


@dataclass(frozen=True)
class Condition:
    field: str
    op: str
    value: Any = None


def where(field: str, op: str, value: Any = None) -> Condition:
    op = op.upper()
    if op not in _OPERATORS:
        raise ValueError(f"Unsupported operator '{op}'")
    if op == "IN" and not isinstance(value, (list, tuple)):
        raise ValueError("IN expects a list of values")
    return Condition(field=field, op=op, value=value)


def _to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def compile_conditions(conditions: Sequence[Condition]) -> Tuple[str, Dict[str, Any]]:
    """Return ``(where_clause, named_parameters)`` for *conditions*."""
    clauses: List[str] = []
    params: Dict[str, Any] = {}
    for i, cond in enumerate(conditions):
        name = f"p{i}"
        if cond.op in ("IS NULL", "IS NOT NULL"):
            # MISSING fields count as NULL for documents written before the field existed
            if cond.op == "IS NULL":
                clauses.append(f"({cond.field} IS NULL OR {cond.field} IS MISSING)")
            else:
                clauses.append(f"{cond.field} IS NOT NULL")
            continue
        if cond.op == "IN":
            clauses.append(f"{cond.field} IN ${name}")
            params[name] = list(cond.value)
            continue
        if isinstance(cond.value, datetime):
            clauses.append(f"STR_TO_MILLIS({cond.field}) {cond.op} ${name}")
            params[name] = _to_millis(cond.value)
        else:
            clauses.append(f"{cond.field} {cond.op} ${name}")
            params[name] = cond.value
    return (" AND ".join(clauses) if clauses else "1=1"), params


def build_select(
    keyspace: str,
    conditions: Sequence[Condition],
    order_by: Optional[Sequence[Tuple[str, str]]] = None,
    limit: Optional[int] = None,
    offset: int = 0,
) -> Tuple[str, Dict[str, Any]]:
    where_clause, params = compile_conditions(conditions)
    query = f"SELECT META().id, * FROM {keyspace} WHERE {where_clause}"
    if order_by:
        parts = [f"{field} {direction.upper()}" for field, direction in order_by]
        query += " ORDER BY " + ", ".join(parts)
    if limit is not None:
        query += f" LIMIT {int(limit)}"
    if offset:
        query += f" OFFSET {int(offset)}"
    return query, params


def build_count(keyspace: str, conditions: Sequence[Condition]) -> Tuple[str, Dict[str, Any]]:
    where_clause, params = compile_conditions(conditions)
    return f"SELECT COUNT(*) AS n FROM {keyspace} WHERE {where_clause}", params
