import sqlite3
from datetime import date, datetime

import pytest

from mvckit.codec import NULL, SQLValue, ValueKind
from mvckit.database import Database
from mvckit.errors import (
    ModelNotInitializedError,
    QueryExecutionError,
    QueryTimeoutError,
    RelationCycleError,
    SchemaIntrospectionError,
)
from mvckit.model import Model, ResultRow, ResultStyle
from mvckit.query import Filter, JoinType, SQLField, SQLKeyPair

PRODUCT_COLUMNS = ["id", "category_id", "code", "name", "price", "released", "updated_at", "stock"]


class TestResultRow:
    def make(self):
        return ResultRow(
            ["id", "name", "id"],
            [SQLValue(ValueKind.INTEGER, 1), SQLValue(ValueKind.TEXT, "a"), SQLValue(ValueKind.INTEGER, 9)],
        )

    def test_lookup_returns_first_match(self):
        row = self.make()
        assert row.index("id") == 0
        assert row.value("id") == 1
        assert row.index("missing") == -1
        assert row.get("missing") is None

    def test_duplicates_are_kept_positionally(self):
        row = self.make()
        assert len(row) == 3
        assert [v.value for _, v in row] == [1, "a", 9]
        assert row.as_dict() == {"id": 1, "name": "a"}

    def test_set_overwrites_value(self):
        row = self.make()
        row.set("name", "")
        assert row.get("name") == SQLValue(ValueKind.TEXT, "")
        with pytest.raises(KeyError):
            row.set("missing", 1)

    def test_shape_must_match(self):
        with pytest.raises(ValueError):
            ResultRow(["a", "b"], [NULL])


class TestInitialize:
    def test_reads_columns(self, products_model):
        assert products_model.fields == PRODUCT_COLUMNS
        assert products_model.initialized
        assert dict(products_model.column_types)["price"] == "FLOAT"

    def test_unknown_table(self, database):
        with pytest.raises(SchemaIntrospectionError):
            Model().initialize(database, "no_such_table", "id")

    def test_uninitialized_model_fails_fast(self):
        with pytest.raises(ModelNotInitializedError):
            Model("products").fetch()
        with pytest.raises(ModelNotInitializedError):
            Model("products").insert([SQLField("code", "x")])

    def test_labels(self, products_model):
        products_model.assign_labels({"code": "Product code"})
        assert products_model.label("code") == "Product code"
        assert products_model.label("price") == "Undefined"
        assert products_model.has_field("price")
        assert not products_model.has_field("colour")


class TestBind:
    def test_placeholders_become_named_binds(self):
        clause, binds = Database.bind("SELECT * FROM t WHERE (a = ?) AND (b = ?)", [1, date(2024, 1, 2)])
        assert str(clause) == "SELECT * FROM t WHERE (a = :p0) AND (b = :p1)"
        assert binds == {"p0": 1, "p1": "2024-01-02"}

    def test_quoted_question_marks_are_text(self):
        clause, binds = Database.bind("SELECT * FROM t WHERE (a = 'why?') AND (\"b?\" = ?)", ["x"])
        assert str(clause) == "SELECT * FROM t WHERE (a = 'why?') AND (\"b?\" = :p0)"
        assert binds == {"p0": "x"}

    def test_default_query_with_literal_question_mark(self, products_model):
        products_model.default_query = "SELECT code, 'in stock?' AS label FROM products WHERE stock > 10"
        rows = products_model.fetch()
        assert [(r.value("code"), r.value("label")) for r in rows] == [("F-150", "in stock?")]

    def test_placeholder_count_must_match(self):
        with pytest.raises(QueryExecutionError):
            Database.bind("SELECT * FROM t WHERE (a = ?)", [])


class TestFetch:
    def test_filters_and_types(self, products_model):
        rows = products_model.fetch([Filter("price", ">", 20000)])

        assert [r.value("code") for r in rows] == ["F-150", "F-250"]
        row = rows[0]
        assert row.fields == tuple(PRODUCT_COLUMNS)
        assert row.get("id") == SQLValue(ValueKind.INTEGER, 1)
        assert row.get("price") == SQLValue(ValueKind.FLOAT, 29990.0)
        assert row.get("released") == SQLValue(ValueKind.TIMESTAMP, date(2021, 5, 1))
        assert row.get("updated_at") == SQLValue(ValueKind.TIMESTAMP, datetime(2024, 1, 2, 3, 4, 5))
        assert row.get("stock") == SQLValue(ValueKind.INTEGER, 12)

    def test_sqlite_integers_are_64_bit(self, database):
        with database.engine.begin() as conn:
            conn.exec_driver_sql("INSERT INTO categories (id, title) VALUES (?, ?)", (3_000_000_000, "Van"))

        categories = Model().initialize(database, "categories")
        assert dict(categories.column_types)["id"] == "BIGINT"
        row = categories.fetch([Filter("id", "=", 3_000_000_000)])[0]
        assert row.get("id") == SQLValue(ValueKind.INTEGER, 3_000_000_000)

    def test_null_columns(self, products_model):
        row = products_model.fetch([Filter("code", "=", "FOCUS")])[0]
        assert row.get("released") is NULL
        assert row.get("stock") is NULL

    def test_limit(self, products_model):
        assert len(products_model.fetch_all(2)) == 2
        assert len(products_model.fetch_all()) == 3

    def test_in_filter(self, products_model):
        rows = products_model.fetch([Filter("id", "IN", [1, 3])])
        assert [r.value("id") for r in rows] == [1, 3]

    def test_empty_in_filter_matches_nothing(self, products_model):
        assert products_model.fetch([Filter("id", "IN", [])]) == []

    def test_default_query_overrides_filters(self, products_model):
        products_model.default_query = "SELECT code, price FROM products ORDER BY id DESC"
        rows = products_model.fetch([Filter("id", "=", 1)])

        assert [r.value("code") for r in rows] == ["FOCUS", "F-250", "F-150"]
        assert rows[0].get("price").kind is ValueKind.FLOAT

    def test_execution_error_carries_statement_not_values(self, products_model):
        with pytest.raises(QueryExecutionError) as info:
            products_model.fetch([Filter("no_such_column", "=", "secret-value")])

        assert "no_such_column" in info.value.statement
        assert "secret-value" not in str(info.value)

    def test_last_query(self, products_model):
        products_model.fetch([Filter("code", "=", "F-150")], 1)
        assert products_model.last_query.statement == "SELECT * FROM products WHERE (code = ?) LIMIT 1"
        assert products_model.last_query.params == ["F-150"]


class TestWrites:
    def test_insert_round_trip(self, products_model):
        assert products_model.insert([
            SQLField("category_id", 2),
            SQLField("code", "MUSTANG"),
            SQLField("name", "Ford Mustang"),
            SQLField("price", 42500.5),
            SQLField("released", date(2023, 7, 4)),
            SQLField("updated_at", datetime(2024, 5, 6, 7, 8, 9)),
            SQLField("stock", 2**40),
        ])

        new_id = products_model.get_last_inserted_id()
        assert new_id == 4

        row = products_model.fetch([Filter("id", "=", new_id)])[0]
        assert row.value("released") == date(2023, 7, 4)
        assert row.value("updated_at") == datetime(2024, 5, 6, 7, 8, 9)
        assert row.value("stock") == 2**40
        assert row.value("price") == 42500.5

    def test_update_binds_primary_key_last(self, products_model):
        assert products_model.update([SQLField("name", "Ford F-150 Lightning"), SQLField("stock", 1)], 1)

        assert products_model.last_query.params == ["Ford F-150 Lightning", 1, 1]
        row = products_model.fetch([Filter("id", "=", 1)])[0]
        assert row.value("name") == "Ford F-150 Lightning"
        assert row.value("stock") == 1

    def test_update_of_missing_row_is_not_an_error(self, products_model):
        assert products_model.update([SQLField("name", "ghost")], 999)

    def test_delete(self, products_model):
        assert products_model.delete(3)
        assert [r.value("id") for r in products_model.fetch_all()] == [1, 2]

    def test_write_error(self, products_model):
        with pytest.raises(QueryExecutionError):
            products_model.insert([SQLField("no_such_column", 1)])

    def test_last_id_falls_back_to_highest_key(self, database):
        assert Model().initialize(database, "products").get_last_inserted_id() == 3

    def test_write_deadline(self, database, products_model, tmp_path):
        blocker = sqlite3.connect(tmp_path / "test.db", isolation_level=None)
        blocker.execute("BEGIN EXCLUSIVE")
        try:
            with pytest.raises(QueryTimeoutError):
                database.execute_write("UPDATE products SET stock = ? WHERE (id = ?)", [0, 1], timeout=0.2)
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        # let the abandoned statement reach the backend, then check it did not land
        database._writer.shutdown(wait=True)
        assert products_model.fetch([Filter("id", "=", 1)])[0].value("stock") == 12


class TestRelations:
    def test_full_result_flattens_joined_columns(self, products_model, categories_model):
        products_model.add_relation(categories_model, SQLKeyPair("category_id", "id"), JoinType.INNER, ResultStyle.FULL_RESULT)

        assert products_model.fields[-2:] == ["categories.id", "categories.title"]

        row = products_model.fetch([Filter("products.id", "=", 3)])[0]
        assert row.fields == tuple(PRODUCT_COLUMNS + ["id", "title"])
        assert row.value("id") == 3
        assert row.values[len(PRODUCT_COLUMNS)].value == 2
        assert row.value("title") == "Car"
        assert products_model.last_query.statement == (
            "SELECT * FROM products INNER JOIN categories ON categories.id=products.category_id"
            " WHERE (products.id = ?)"
        )

    def test_sub_result_runs_one_child_fetch_per_row(self, products_model, images_model, monkeypatch):
        relation = products_model.add_relation(images_model, SQLKeyPair("id", "product_id"), JoinType.LEFT, ResultStyle.SUB_RESULT)

        calls = []
        original = relation.model.fetch

        def spy(filters=(), limit=0):
            calls.append(list(filters))
            return original(filters, limit)

        monkeypatch.setattr(relation.model, "fetch", spy)

        rows = products_model.fetch_all()

        assert len(rows) == 3
        assert len(calls) == 3
        assert [(f[0].field, f[0].operator, f[0].value) for f in calls] == [
            ("product_id", "=", 1),
            ("product_id", "=", 2),
            ("product_id", "=", 3),
        ]
        assert [[s.value("url") for s in r.subresult] for r in rows] == [
            ["f150-front.jpg", "f150-back.jpg"],
            ["f250.jpg"],
            [],
        ]
        # nested rows do not widen the parent row
        assert rows[0].fields == tuple(PRODUCT_COLUMNS)

    def test_child_must_be_initialized(self, products_model):
        with pytest.raises(ModelNotInitializedError):
            products_model.add_relation(Model("categories"), SQLKeyPair("category_id", "id"))
        assert products_model.relations == []

    def test_child_is_copied(self, products_model, categories_model):
        relation = products_model.add_relation(categories_model, SQLKeyPair("category_id", "id"))
        categories_model.assign_labels({"title": "Title"})
        categories_model.fields.append("extra")

        assert relation.model is not categories_model
        assert relation.model.label("title") == "Undefined"
        assert "extra" not in relation.model.fields

    def test_cycle_is_rejected(self, products_model, categories_model):
        products_model.add_relation(categories_model, SQLKeyPair("category_id", "id"))

        with pytest.raises(RelationCycleError) as info:
            categories_model.add_relation(products_model, SQLKeyPair("id", "category_id"))
        assert info.value.path == ["categories", "products", "categories"]

    def test_self_relation_is_rejected(self, products_model, database):
        other = Model().initialize(database, "products")
        with pytest.raises(RelationCycleError):
            products_model.add_relation(other, SQLKeyPair("id", "id"))
