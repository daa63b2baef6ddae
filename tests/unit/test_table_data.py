"""Unit tests for paged table streaming."""

from unittest.mock import MagicMock

import pytest

from fakes import FakeDatabase, primary_key_index
from porter.policy import EntityPolicy
from porter.redaction import RowTransformer
from porter.schema_emitter import SchemaEmitter
from porter.serializer import SQLSerializer
from porter.table_data import TableDataGenerator, plan_ordering
from utils.cancellation import CancellationToken, OperationCancelled


def make_generator(db: FakeDatabase, page_size: int = 2) -> TableDataGenerator:
    return TableDataGenerator(
        db,
        SchemaEmitter(db),
        RowTransformer(seed=7),
        SQLSerializer(),
        page_size=page_size,
    )


async def collect(generator: TableDataGenerator, table: str, policy: EntityPolicy, **kwargs) -> list[str]:
    return [statement async for statement in generator.paginate(table, policy, **kwargs)]


class TestPlanOrdering:
    """Tests for ordering column selection."""

    def test_single_column_primary_key_uses_keyset(self):
        plan = plan_ordering(primary_key_index("id"))
        assert plan.column == "id"
        assert plan.keyset is True
        assert plan.primary_key == "id"
        assert plan.source == "primary"

    def test_composite_primary_key_uses_offset(self):
        plan = plan_ordering(
            [
                {"Key_name": "PRIMARY", "Non_unique": 0, "Seq_in_index": 2, "Column_name": "b"},
                {"Key_name": "PRIMARY", "Non_unique": 0, "Seq_in_index": 1, "Column_name": "a"},
            ]
        )
        assert plan.column == "a"
        assert plan.keyset is False
        assert plan.primary_key is None

    def test_unique_index_when_no_primary_key(self):
        plan = plan_ordering(
            [
                {"Key_name": "idx_created", "Non_unique": 1, "Seq_in_index": 1, "Column_name": "created_at"},
                {"Key_name": "uniq_code", "Non_unique": 0, "Seq_in_index": 1, "Column_name": "code", "Null": ""},
            ]
        )
        assert plan.column == "code"
        assert plan.keyset is True
        assert plan.source == "unique"

    def test_nullable_unique_index_falls_back_to_offset(self):
        plan = plan_ordering(
            [{"Key_name": "uniq_code", "Non_unique": 0, "Seq_in_index": 1, "Column_name": "code", "Null": "YES"}]
        )
        assert plan.column == "code"
        assert plan.keyset is False

    def test_first_indexed_column(self):
        plan = plan_ordering(
            [{"Key_name": "idx_created", "Non_unique": 1, "Seq_in_index": 1, "Column_name": "created_at"}]
        )
        assert plan.column == "created_at"
        assert plan.source == "index"

    def test_no_index(self):
        plan = plan_ordering([])
        assert plan.column is None
        assert plan.source == "none"


class TestTableDataGenerator:
    """Tests for TableDataGenerator."""

    @pytest.mark.asyncio
    async def test_keyset_paging_streams_every_row_once(self):
        rows = [{"id": i, "name": f"user{i}"} for i in (5, 1, 3, 2, 4)]
        db = FakeDatabase({"users": {"create": "", "indexes": primary_key_index(), "rows": rows}})

        statements = await collect(make_generator(db), "users", EntityPolicy())

        assert statements == [
            f"INSERT INTO `users` (`id`, `name`) VALUES ({i}, 'user{i}');\n" for i in range(1, 6)
        ]
        selects = [(q, args) for q, args in db.queries if q.startswith("SELECT")]
        assert selects[0] == ("SELECT * FROM `users` ORDER BY `id` LIMIT %s", (2,))
        assert selects[1] == ("SELECT * FROM `users` WHERE `id` > %s ORDER BY `id` LIMIT %s", (2, 2))
        assert len(selects) == 3

    @pytest.mark.asyncio
    async def test_offset_paging_without_index(self):
        rows = [{"note": f"n{i}"} for i in range(4)]
        db = FakeDatabase({"notes": {"create": "", "indexes": [], "rows": rows}})

        statements = await collect(make_generator(db), "notes", EntityPolicy())

        assert len(statements) == 4
        offsets = [args[1] for q, args in db.queries if q.startswith("SELECT")]
        assert offsets == [0, 2, 4]

    @pytest.mark.asyncio
    async def test_empty_table(self):
        db = FakeDatabase({"empty": {"create": "", "indexes": primary_key_index(), "rows": []}})
        assert await collect(make_generator(db), "empty", EntityPolicy()) == []

    @pytest.mark.asyncio
    async def test_policy_redacts_rows_except_retained(self):
        rows = [{"id": 1, "email": "a@example.com"}, {"id": 2, "email": "b@example.com"}]
        db = FakeDatabase({"users": {"create": "", "indexes": primary_key_index(), "rows": rows}})
        policy = EntityPolicy(omitted_columns={"email"}, retained_row_keys={1})

        statements = await collect(make_generator(db, page_size=10), "users", policy)

        assert "'a@example.com'" in statements[0]
        assert "'b@example.com'" not in statements[1]
        assert statements[1].startswith("INSERT INTO `users` (`id`, `email`) VALUES (2, '")

    @pytest.mark.asyncio
    async def test_cancellation_between_pages(self):
        rows = [{"id": i} for i in range(1, 7)]
        db = FakeDatabase({"t": {"create": "", "indexes": primary_key_index(), "rows": rows}})
        token = CancellationToken()
        seen = []

        with pytest.raises(OperationCancelled):
            async for statement in make_generator(db).paginate("t", EntityPolicy(), token):
                seen.append(statement)
                token.cancel("stop")

        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_unusual_table_and_column_names(self):
        rows = [{"id": i, "first name": f"n{i}", "straße": "x"} for i in (1, 2, 3)]
        db = FakeDatabase({"order-items": {"create": "", "indexes": primary_key_index(), "rows": rows}})

        statements = await collect(make_generator(db), "order-items", EntityPolicy())

        assert statements[0] == "INSERT INTO `order-items` (`id`, `first name`, `straße`) VALUES (1, 'n1', 'x');\n"
        assert len(statements) == 3

    @pytest.mark.asyncio
    async def test_empty_strings_become_null_only_in_nullable_columns(self):
        db = FakeDatabase(
            {
                "t": {
                    "create": "",
                    "indexes": primary_key_index(),
                    "columns": [
                        {"Field": "id", "Null": "NO"},
                        {"Field": "code", "Null": "NO"},
                        {"Field": "note", "Null": "YES"},
                    ],
                    "rows": [{"id": 1, "code": "", "note": ""}],
                }
            }
        )
        generator = TableDataGenerator(
            db, SchemaEmitter(db), RowTransformer(seed=7), SQLSerializer(empty_strings_as_null=True)
        )

        statements = await collect(generator, "t", EntityPolicy())

        assert statements == ["INSERT INTO `t` (`id`, `code`, `note`) VALUES (1, '', NULL);\n"]

    @pytest.mark.asyncio
    async def test_id_column_is_retention_key_without_index(self):
        rows = [{"id": 1, "email": "a@example.com"}, {"id": 2, "email": "b@example.com"}]
        db = FakeDatabase({"users": {"create": "", "indexes": [], "rows": rows}})
        policy = EntityPolicy(omitted_columns={"email"}, retained_row_keys={2})

        plan = await make_generator(db).plan("users", policy)
        statements = await collect(make_generator(db, page_size=10), "users", policy)

        assert plan.retention_key == "id"
        assert "'a@example.com'" not in statements[0]
        assert "'b@example.com'" in statements[1]

    @pytest.mark.asyncio
    async def test_retained_keys_without_single_column_key_are_reported(self):
        indexes = [
            {"Key_name": "PRIMARY", "Non_unique": 0, "Seq_in_index": 1, "Column_name": "a"},
            {"Key_name": "PRIMARY", "Non_unique": 0, "Seq_in_index": 2, "Column_name": "b"},
        ]
        db = FakeDatabase({"links": {"create": "", "indexes": indexes, "rows": [{"a": 1, "b": 2}]}})
        logger = MagicMock()
        generator = TableDataGenerator(
            db, SchemaEmitter(db), RowTransformer(seed=7), SQLSerializer(), logger=logger
        )

        plan = await generator.plan("links", EntityPolicy(omitted_columns={"b"}, retained_row_keys={1}))

        assert plan.retention_key is None
        logger.warning.assert_called_once()
        assert "retained row keys cannot be matched" in logger.warning.call_args.args[0]
        assert logger.warning.call_args.kwargs["table"] == "links"

    @pytest.mark.asyncio
    async def test_no_warning_without_retained_keys(self):
        indexes = [
            {"Key_name": "PRIMARY", "Non_unique": 0, "Seq_in_index": 1, "Column_name": "a"},
            {"Key_name": "PRIMARY", "Non_unique": 0, "Seq_in_index": 2, "Column_name": "b"},
        ]
        db = FakeDatabase({"links": {"create": "", "indexes": indexes, "rows": [{"a": 1, "b": 2}]}})
        logger = MagicMock()
        generator = TableDataGenerator(
            db, SchemaEmitter(db), RowTransformer(seed=7), SQLSerializer(), logger=logger
        )

        await generator.plan("links", EntityPolicy(omitted_columns={"b"}))

        logger.warning.assert_not_called()
