"""
Schema-bound models.

A Model is tied to one table. initialize() reads the table's columns from
the database once; every query after that is compiled from the model's
own description plus the filters a caller passes in, and every returned
column is decoded through mvckit.codec into an SQLValue.

Relations attach other models to this one. A FULL_RESULT relation becomes
a JOIN in the same SELECT and its columns are flattened into each row. A
SUB_RESULT relation runs one extra filtered fetch per parent row and
nests the child rows under it, which keeps one-to-many shapes out of the
join at the price of one query per parent row.
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Optional, Sequence

from mvckit import codec
from mvckit.codec import SQLValue
from mvckit.database import Database
from mvckit.errors import ModelNotInitializedError, NotFoundError, RelationCycleError
from mvckit.query import (
    CompiledQuery,
    Direction,
    Filter,
    JoinType,
    OrderClause,
    QueryType,
    SQLField,
    SQLJoin,
    SQLKeyPair,
    SQLTable,
    build_query,
)

logger = logging.getLogger(__name__)


class ResultStyle(int, Enum):
    FULL_RESULT = 0
    SUB_RESULT = 1


@dataclass
class Relation:
    join: SQLJoin
    model: "Model"
    result_style: ResultStyle = ResultStyle.FULL_RESULT


class ResultRow:
    """
    One returned row.

    Columns are kept positionally, not in a dict, because a joined SELECT
    can return the same column name twice. Lookups by name return the
    first match. The shape is fixed once the row is built; values may be
    overwritten with set().
    """
    __slots__ = ("fields", "values", "subresult")

    def __init__(self, fields: Sequence[str], values: Sequence[SQLValue], subresult: Iterable["ResultRow"] = ()):
        if len(fields) != len(values):
            raise ValueError("fields and values must have the same length")
        self.fields = tuple(fields)
        self.values = list(values)
        self.subresult = list(subresult)

    def index(self, name: str) -> int:
        for i, field in enumerate(self.fields):
            if field == name:
                return i
        return -1

    def get(self, name: str, default: Optional[SQLValue] = None) -> Optional[SQLValue]:
        i = self.index(name)
        return default if i < 0 else self.values[i]

    def value(self, name: str, default=None):
        """Plain Python payload of a column."""
        i = self.index(name)
        return default if i < 0 else self.values[i].value

    def set(self, name: str, value):
        i = self.index(name)
        if i < 0:
            raise KeyError(name)
        self.values[i] = value if isinstance(value, SQLValue) else codec.infer(value)

    def as_dict(self) -> dict:
        out = {}
        for field, value in zip(self.fields, self.values):
            out.setdefault(field, value.value)
        return out

    def copy(self) -> "ResultRow":
        return ResultRow(self.fields, self.values, [r.copy() for r in self.subresult])

    def __iter__(self) -> Iterator[tuple[str, SQLValue]]:
        return iter(zip(self.fields, self.values))

    def __len__(self):
        return len(self.fields)

    def __eq__(self, other):
        if not isinstance(other, ResultRow):
            return NotImplemented
        return (self.fields, self.values, self.subresult) == (other.fields, other.values, other.subresult)

    def __repr__(self):
        cols = ", ".join(f"{f}={v.value!r}" for f, v in self)
        return f"<ResultRow({cols}, subresult={len(self.subresult)})>"


class Model:
    """
    A table plus its relations.

    Write methods return True when the statement executed without a driver
    error (zero affected rows included) and raise QueryExecutionError
    otherwise.
    """

    def __init__(self, table_name: str = "", pk_field: str = "id"):
        self.db: Optional[Database] = None
        self.table_name = table_name
        self.pk_field = pk_field
        self.fields: list[str] = []
        self.column_types: list[tuple[str, str]] = []
        self.labels: dict[str, str] = {}
        self.relations: list[Relation] = []
        self.default_query = ""
        # per request thread
        self._local = threading.local()

    def __repr__(self):
        return f"<Model(table={self.table_name}, pk={self.pk_field}, relations={len(self.relations)})>"

    @property
    def initialized(self) -> bool:
        return self.db is not None and bool(self.column_types)

    @property
    def last_query(self) -> Optional[CompiledQuery]:
        """Statement and values of the last query this thread ran through the model."""
        return getattr(self._local, "last_query", None)

    def initialize(self, db: Database, table_name: Optional[str] = None, pk_field: Optional[str] = None) -> "Model":
        """
        Bind the model to a database and read the table's columns.

        Raises SchemaIntrospectionError when the columns cannot be read.
        Columns of related models are listed as ``table.column`` after the
        table's own columns.
        """
        self.db = db
        if table_name:
            self.table_name = table_name
        if pk_field:
            self.pk_field = pk_field

        self.column_types = db.column_types(self.table_name)
        self.fields = [name for name, _ in self.column_types]
        for relation in self.relations:
            self._append_relation_fields(relation)

        logger.info("Model [%s] initialized with %d fields", self.table_name, len(self.fields))
        return self

    def copy(self) -> "Model":
        m = Model(self.table_name, self.pk_field)
        m.db = self.db
        m.fields = list(self.fields)
        m.column_types = list(self.column_types)
        m.labels = dict(self.labels)
        m.relations = [Relation(r.join, r.model.copy(), r.result_style) for r in self.relations]
        m.default_query = self.default_query
        return m

    def assign_labels(self, labels: dict[str, str]):
        self.labels = dict(labels)

    def label(self, field: str) -> str:
        return self.labels.get(field, "Undefined")

    def has_field(self, field: str) -> bool:
        return field in self.fields

    def add_relation(
        self,
        child: "Model",
        keys: SQLKeyPair,
        join_type: JoinType = JoinType.INNER,
        result_style: ResultStyle = ResultStyle.FULL_RESULT,
    ) -> Relation:
        """
        Attach a related model.

        The child must already be initialized. The model keeps its own copy,
        so later changes to ``child`` do not leak into this relation.
        """
        if not child.initialized:
            raise ModelNotInitializedError(f"add_relation({child.table_name})")
        self._check_cycle(child)

        relation = Relation(
            join=SQLJoin(child.table_name, child.pk_field, keys, JoinType(join_type)),
            model=child.copy(),
            result_style=ResultStyle(result_style),
        )
        self.relations.append(relation)
        if self.column_types:
            self._append_relation_fields(relation)
        return relation

    def _check_cycle(self, child: "Model"):
        def walk(model: "Model", path: list[str]):
            if model.table_name in path:
                raise RelationCycleError(path + [model.table_name])
            for relation in model.relations:
                walk(relation.model, path + [model.table_name])

        walk(child, [self.table_name])

    def _append_relation_fields(self, relation: Relation):
        for f in relation.model.fields:
            self.fields.append(f"{relation.join.table}.{f}")

    def _require(self, action: str):
        if not self.initialized:
            raise ModelNotInitializedError(action)

    def _table(self) -> SQLTable:
        return SQLTable(self.table_name, self.pk_field)

    def _run_query(self, compiled: CompiledQuery):
        self._local.last_query = compiled
        return self.db.query(compiled.statement, compiled.params)

    def _execute(self, compiled: CompiledQuery):
        self._local.last_query = compiled
        return self.db.execute_write(compiled.statement, compiled.params)

    def _star_types(self, tables: Optional[Sequence[str]] = None) -> list[str]:
        """
        Declared types in ``SELECT *`` column order: this table, then each
        joined table. Without ``tables`` the joins are the FULL_RESULT
        relations.
        """
        types = [t for _, t in self.column_types]
        if tables is None:
            for relation in self.relations:
                if relation.result_style is ResultStyle.FULL_RESULT:
                    types.extend(t for _, t in relation.model.column_types)
        else:
            for table in tables:
                types.extend(t for _, t in self.db.column_types(table))
        return types

    def _named_types(self, tables: Sequence[str] = ()) -> dict[str, str]:
        named: dict[str, str] = {}

        def add(table: str, pairs):
            for name, type_name in pairs:
                named.setdefault(name, type_name)
                named.setdefault(f"{table}.{name}", type_name)

        add(self.table_name, self.column_types)
        for relation in self.relations:
            add(relation.join.table, relation.model.column_types)
        for table in tables:
            if table != self.table_name:
                add(table, self.db.column_types(table))
        return named

    def materialize(
        self,
        keys: Sequence[str],
        rows,
        star: bool = False,
        tables: Optional[Sequence[str]] = None,
        columns: Optional[Sequence[str]] = None,
    ) -> list[ResultRow]:
        """
        Decode raw rows and resolve SUB_RESULT relations.

        For ``SELECT *`` results the declared types of this table and the
        joined ``tables`` are matched by position, which keeps duplicate
        column names apart. Other selects are matched through the selected
        ``columns`` (so ``table.column`` picks that table's type), falling
        back to the result key; columns no table declares (aggregates,
        expressions) are typed from the driver value.
        """
        types: list[Optional[str]]
        star_types = self._star_types(tables) if star else []
        if star and len(star_types) == len(keys):
            types = list(star_types)
        else:
            named = self._named_types(tables or ())
            if columns is not None and len(columns) == len(keys):
                types = [named.get(c, named.get(k)) for c, k in zip(columns, keys)]
            else:
                types = [named.get(k) for k in keys]

        result = []
        for raw in rows:
            values = [codec.decode(t, v) if t else codec.infer(v) for t, v in zip(types, raw)]
            row = ResultRow(keys, values)
            self._resolve_subresults(row)
            result.append(row)
        return result

    def _resolve_subresults(self, row: ResultRow):
        for relation in self.relations:
            if relation.result_style is not ResultStyle.SUB_RESULT:
                continue

            local = relation.join.keys.local_key
            i = row.index(local)
            if i < 0:
                logger.warning("Relation %s: key %s missing from %s row", relation.join.table, local, self.table_name)
                continue

            f = [Filter(field=relation.join.keys.foreign_key, operator="=", value=row.values[i].value)]
            row.subresult.extend(relation.model.fetch(f, 0))

    def fetch(self, filters: Sequence[Filter] = (), limit: int = 0) -> list[ResultRow]:
        """
        SELECT rows of this table matching ``filters``.

        FULL_RESULT relations are joined into the same statement. When a
        default query is set it runs instead and the filters are ignored.
        """
        self._require("fetch()")

        if self.default_query:
            keys, rows = self._run_query(CompiledQuery(self.default_query, []))
            return self.materialize(keys, rows)

        joins = [r.join for r in self.relations if r.result_style is ResultStyle.FULL_RESULT]
        compiled = build_query(QueryType.SELECT, [], self._table(), joins, filters, limit=limit)
        keys, rows = self._run_query(compiled)
        return self.materialize(keys, rows, star=True)

    def fetch_all(self, limit: int = 0) -> list[ResultRow]:
        return self.fetch([], limit)

    def insert(self, fields: Sequence[SQLField]) -> bool:
        self._require("insert()")
        compiled = build_query(QueryType.INSERT, fields, self._table())
        result = self._execute(compiled)
        self._local.last_insert_id = result.lastrowid
        return True

    def update(self, fields: Sequence[SQLField], pk_value) -> bool:
        self._require("update()")
        f = [Filter(field=self.pk_field, operator="=", value=pk_value)]
        self._execute(build_query(QueryType.UPDATE, fields, self._table(), filters=f))
        return True

    def delete(self, pk_value) -> bool:
        self._require("delete()")
        f = [Filter(field=self.pk_field, operator="=", value=pk_value)]
        self._execute(build_query(QueryType.DELETE, [], self._table(), filters=f))
        return True

    def get_last_inserted_id(self) -> int:
        """
        Primary key of the last row inserted through this model by this thread.

        Uses the driver's last-insert id. When this thread has not inserted
        through the model it falls back to the highest primary key, which
        only holds for monotonically increasing keys.
        """
        self._require("get_last_inserted_id()")
        last = getattr(self._local, "last_insert_id", None)
        if last:
            return last

        compiled = build_query(
            QueryType.SELECT,
            [SQLField(self.pk_field)],
            self._table(),
            order_by=[OrderClause(self.pk_field, Direction.DESC)],
            limit=1,
        )
        keys, rows = self._run_query(compiled)
        if not rows:
            raise NotFoundError(f"table {self.table_name} has no rows")
        return self.materialize(keys, rows)[0].values[0].value

    def query_builder(self):
        from mvckit.querybuilder import QueryBuilder

        return QueryBuilder(self)
