"""The migration chain must produce the same schema as the ORM models."""

import importlib.util
from pathlib import Path

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

from tradecal.db.models import Base

VERSIONS = Path(__file__).parents[2] / "tradecal" / "db" / "migrations" / "versions"
CHAIN = (
    "c4a1e7d20b93_create_calibration_tables.py",
    "e2d9b4a61f07_add_model_metrics_tables.py",
)


def _load(filename):
    spec = importlib.util.spec_from_file_location(filename[:-3], VERSIONS / filename)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.fixture
def migrations():
    return [_load(filename) for filename in CHAIN]


@pytest.fixture
def engine():
    engine = create_engine("sqlite://")
    yield engine
    engine.dispose()


def _run(engine, fn):
    with engine.begin() as conn:
        ctx = MigrationContext.configure(conn)
        with Operations.context(ctx):
            fn()


def _upgrade_all(engine, migrations):
    for migration in migrations:
        _run(engine, migration.upgrade)


class TestMigrationChain:
    def test_revisions_are_linked(self, migrations):
        assert migrations[0].down_revision is None
        for previous, current in zip(migrations, migrations[1:]):
            assert current.down_revision == previous.revision

    def test_upgrade_matches_models(self, migrations, engine):
        _upgrade_all(engine, migrations)

        inspector = inspect(engine)
        assert set(inspector.get_table_names()) == set(Base.metadata.tables)
        for name, table in Base.metadata.tables.items():
            migrated = {column["name"] for column in inspector.get_columns(name)}
            assert migrated == {column.name for column in table.columns}, name

    def test_unique_offer_hash(self, migrations, engine):
        _upgrade_all(engine, migrations)

        unique_columns = [
            tuple(u["column_names"]) for u in inspect(engine).get_unique_constraints("trade_offer_events")
        ]
        indexed = [
            tuple(i["column_names"]) for i in inspect(engine).get_indexes("trade_offer_events") if i["unique"]
        ]
        assert ("input_hash",) in unique_columns + indexed

    def test_metrics_rollup_key_is_unique(self, migrations, engine):
        _upgrade_all(engine, migrations)

        unique_columns = [
            tuple(u["column_names"]) for u in inspect(engine).get_unique_constraints("model_metrics_daily")
        ]
        assert ("day", "mode", "segment_key") in unique_columns

    def test_downgrade_reverses_each_step(self, migrations, engine):
        _upgrade_all(engine, migrations)

        _run(engine, migrations[1].downgrade)
        inspector = inspect(engine)
        assert "model_metrics_daily" not in inspector.get_table_names()
        assert "drivers_json" not in {c["name"] for c in inspector.get_columns("trade_offer_events")}

        _run(engine, migrations[0].downgrade)
        assert inspect(engine).get_table_names() == []
