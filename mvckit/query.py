"""
SQL statement compilation.

build_query() turns a query intent into statement text with ``?``
placeholders and the ordered list of values to bind. Values never end up
in the statement text. Table and column names are written as given; they
come from model definitions, not from request data.
"""
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple, Optional, Sequence

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

LOGIC_AND = "AND"
LOGIC_OR = "OR"
OPERATOR_IN = "IN"


class QueryType(str, Enum):
    INSERT = "c"
    SELECT = "r"
    UPDATE = "u"
    DELETE = "d"


class JoinType(str, Enum):
    INNER = "INNER"
    LEFT = "LEFT"
    RIGHT = "RIGHT"


class Direction(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


@dataclass
class SQLField:
    name: str
    value: Any = None


@dataclass(frozen=True)
class SQLTable:
    name: str
    pk_field: str = "id"


@dataclass(frozen=True)
class SQLKeyPair:
    local_key: str
    foreign_key: str


@dataclass(frozen=True)
class SQLJoin:
    table: str
    pk_field: str
    keys: SQLKeyPair
    join_type: JoinType = JoinType.INNER


@dataclass
class Filter:
    """
    One WHERE predicate.

    ``logic`` joins it to the previous predicate: empty for the first
    filter of a list, AND or OR for the rest.
    """
    field: str
    operator: str
    value: Any
    logic: str = ""


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"invalid column name: {name!r}")
    return name


@dataclass(frozen=True)
class OrderClause:
    column: str
    direction: Direction = Direction.ASC

    def __post_init__(self):
        _check_identifier(self.column)
        direction = self.direction
        if not isinstance(direction, Direction):
            direction = Direction(str(direction).upper())
        object.__setattr__(self, "direction", direction)

    def render(self) -> str:
        return f"{self.column} {self.direction.value}"


@dataclass(frozen=True)
class GroupClause:
    columns: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(_check_identifier(c) for c in self.columns))

    def render(self) -> str:
        return "GROUP BY " + ", ".join(self.columns)


class CompiledQuery(NamedTuple):
    statement: str
    params: list


def _is_sequence(value) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _where(filters: Sequence[Filter], params: list) -> str:
    if not filters:
        return ""

    clause = " WHERE "
    for i, f in enumerate(filters):
        if i > 0 and f.logic:
            clause += f" {f.logic} "

        if f.operator.upper() == OPERATOR_IN:
            items = list(f.value) if _is_sequence(f.value) else [f.value]
            params.extend(items)
            clause += f"({f.field} IN ({', '.join('?' for _ in items)}))"
        else:
            params.append(f.value)
            clause += f"({f.field} {f.operator} ?)"
    return clause


def _joins(table: SQLTable, joins: Sequence[SQLJoin]) -> str:
    clause = ""
    for jn in joins:
        clause += f" {JoinType(jn.join_type).value} JOIN {jn.table} ON "
        clause += f"{jn.table}.{jn.keys.foreign_key}={table.name}.{jn.keys.local_key}"
    return clause


def build_query(
    query_type: QueryType,
    fields: Sequence[SQLField],
    table: SQLTable,
    joins: Sequence[SQLJoin] = (),
    filters: Sequence[Filter] = (),
    group_by: Optional[GroupClause] = None,
    order_by: Sequence[OrderClause] = (),
    limit: int = 0,
    offset: int = 0,
) -> CompiledQuery:
    """
    Compile a query intent into ``(statement, params)``.

    The compiler trusts its callers: an INSERT without fields or an
    UPDATE without a row filter compiles to whatever text that implies,
    and the backend reports the problem at execution time.
    """
    params: list = []

    if query_type is QueryType.SELECT:
        columns = ", ".join(f.name for f in fields) if fields else "*"
        q = f"SELECT {columns} FROM {table.name}"
        q += _joins(table, joins)
        q += _where(filters, params)
        if group_by is not None and group_by.columns:
            q += " " + group_by.render()
        if order_by:
            q += " ORDER BY " + ", ".join(o.render() for o in order_by)
        if limit > 0:
            q += f" LIMIT {int(limit)}"
            if offset > 0:
                q += f" OFFSET {int(offset)}"
        return CompiledQuery(q, params)

    if query_type is QueryType.INSERT:
        columns = ", ".join(f.name for f in fields)
        placeholders = ", ".join("?" for _ in fields)
        params.extend(f.value for f in fields)
        return CompiledQuery(f"INSERT INTO {table.name} ({columns}) VALUES ({placeholders})", params)

    if query_type is QueryType.UPDATE:
        assignments = ", ".join(f"{f.name} = ?" for f in fields)
        params.extend(f.value for f in fields)
        # SET placeholders come first in the text, so the row filter binds last
        where = _where(filters, params)
        return CompiledQuery(f"UPDATE {table.name} SET {assignments}{where}", params)

    if query_type is QueryType.DELETE:
        return CompiledQuery(f"DELETE FROM {table.name}{_where(filters, params)}", params)

    raise ValueError(f"unknown query type: {query_type!r}")
