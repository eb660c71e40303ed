from pathlib import Path

import allure
from sqlalchemy import inspect, text

from task_engine.orchestrator.repository import SqliteEventLogStore

pytestmark = [
    allure.epic("Task Engine"),
    allure.feature("Context Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    store = SqliteEventLogStore(tmp_path / "migrations.db")
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
    assert version == "20261018_0001"
    assert str(journal_mode).lower() == "wal"

    inspector = inspect(store.engine)
    assert {"task_contexts", "context_entries"} <= set(inspector.get_table_names())
    unique = inspector.get_unique_constraints("context_entries")
    assert [constraint["column_names"] for constraint in unique] == [
        ["context_id", "sequence_number"],
    ]
    store.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    store = SqliteEventLogStore(tmp_path / "twice.db")
    store.init_schema()
    store.init_schema()

    with store.engine.connect() as connection:
        rows = connection.execute(text("SELECT COUNT(*) FROM alembic_version")).scalar_one()
    assert rows == 1
    store.close()
