from typing import Iterable, Optional

from mvckit.codec import ValueKind
from mvckit.errors import MvcKitError, NotFoundError
from mvckit.query import (
    LOGIC_AND,
    LOGIC_OR,
    OPERATOR_IN,
    CompiledQuery,
    Direction,
    Filter,
    GroupClause,
    JoinType,
    OrderClause,
    QueryType,
    SQLField,
    SQLJoin,
    SQLKeyPair,
    SQLTable,
    build_query,
)


class QueryBuilder:
    """
    Fluent SELECT builder bound to a model.

    Produces the same compiled statements as Model.fetch(), so values are
    always bound and never formatted into the SQL text::

        rows = (products.query_builder()
                .select("id", "name")
                .where("price", ">", 100)
                .or_where("type", "=", "Truck")
                .order_by("price", "desc")
                .limit(10)
                .execute())
    """

    def __init__(self, model):
        self.model = model
        self.select_cols: list[str] = ["*"]
        self.joins: list[SQLJoin] = []
        self.wheres: list[Filter] = []
        self.group: Optional[GroupClause] = None
        self.orders: list[OrderClause] = []
        self.limit_value = 0
        self.offset_value = 0

    def select(self, *columns: str) -> "QueryBuilder":
        self.select_cols = list(columns) or ["*"]
        return self

    def _join(self, join_type: JoinType, table: str, pk_field: str, local_key: str, foreign_key: str) -> "QueryBuilder":
        self.joins.append(SQLJoin(table, pk_field, SQLKeyPair(local_key, foreign_key), join_type))
        return self

    def join(self, table: str, pk_field: str, local_key: str, foreign_key: str) -> "QueryBuilder":
        return self._join(JoinType.INNER, table, pk_field, local_key, foreign_key)

    def left_join(self, table: str, pk_field: str, local_key: str, foreign_key: str) -> "QueryBuilder":
        return self._join(JoinType.LEFT, table, pk_field, local_key, foreign_key)

    def right_join(self, table: str, pk_field: str, local_key: str, foreign_key: str) -> "QueryBuilder":
        return self._join(JoinType.RIGHT, table, pk_field, local_key, foreign_key)

    def _next_logic(self) -> str:
        return LOGIC_AND if self.wheres else ""

    def where(self, field: str, operator: str, value) -> "QueryBuilder":
        self.wheres.append(Filter(field, operator, value, self._next_logic()))
        return self

    def or_where(self, field: str, operator: str, value) -> "QueryBuilder":
        # a leading OR has nothing to join to
        logic = LOGIC_OR if self.wheres else ""
        self.wheres.append(Filter(field, operator, value, logic))
        return self

    def where_in(self, field: str, values: Iterable) -> "QueryBuilder":
        self.wheres.append(Filter(field, OPERATOR_IN, list(values), self._next_logic()))
        return self

    def group_by(self, *columns: str) -> "QueryBuilder":
        self.group = GroupClause(tuple(columns))
        return self

    def order_by(self, column: str, direction=Direction.ASC) -> "QueryBuilder":
        self.orders.append(OrderClause(column, direction))
        return self

    def limit(self, limit: int) -> "QueryBuilder":
        self.limit_value = limit
        return self

    def offset(self, offset: int) -> "QueryBuilder":
        self.offset_value = offset
        return self

    def build(self) -> CompiledQuery:
        fields = [SQLField(col) for col in self.select_cols if col != "*"]
        return build_query(
            QueryType.SELECT,
            fields,
            SQLTable(self.model.table_name, self.model.pk_field),
            self.joins,
            self.wheres,
            self.group,
            self.orders,
            self.limit_value,
            self.offset_value,
        )

    def execute(self):
        self.model._require("execute()")
        compiled = self.build()
        keys, rows = self.model._run_query(compiled)
        star = self.select_cols == ["*"]
        return self.model.materialize(
            keys,
            rows,
            star=star,
            tables=[j.table for j in self.joins],
            columns=None if star else self.select_cols,
        )

    def first(self):
        """First matching row; NotFoundError when there is none."""
        self.limit(1)
        results = self.execute()
        if not results:
            raise NotFoundError()
        return results[0]

    def count(self) -> int:
        self.select_cols = ["COUNT(*) AS count"]
        result = self.first()

        value = result.get("count")
        if value is None:
            raise MvcKitError("count field not found")
        if value.kind is not ValueKind.INTEGER:
            raise MvcKitError("invalid count value")
        return value.value
