"""Tests for migration 001: credit ledger tables.

Runs upgrade() and downgrade() directly through alembic's Operations
against a throwaway SQLite file, then inspects the resulting schema.
"""

import importlib.util
from pathlib import Path
from types import ModuleType

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import Engine, create_engine, inspect, text
from sqlalchemy.exc import IntegrityError

_MIGRATION = (
    Path(__file__).resolve().parents[2]
    / "migrations"
    / "versions"
    / "001_credit_ledger.py"
)


def _load_migration() -> ModuleType:
    module_spec = importlib.util.spec_from_file_location("migration_001", _MIGRATION)
    assert module_spec is not None and module_spec.loader is not None
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


def _run(engine: Engine, step: str) -> None:
    migration = _load_migration()
    with engine.begin() as conn:
        context = MigrationContext.configure(conn)
        with Operations.context(context):
            getattr(migration, step)()


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'migration.db'}")
    yield engine
    engine.dispose()


class TestUpgrade:
    """Schema after upgrade()."""

    def test_revision_identifiers(self):
        migration = _load_migration()

        assert migration.revision == "001_credit_ledger"
        assert migration.down_revision is None

    def test_creates_tables_and_indexes(self, engine):
        _run(engine, "upgrade")

        inspector = inspect(engine)
        assert set(inspector.get_table_names()) >= {
            "users",
            "credit_ledger",
            "credit_grants",
        }
        user_indexes = {ix["name"]: ix for ix in inspector.get_indexes("users")}
        assert user_indexes["ix_users_external_id"]["unique"]
        assert user_indexes["ix_users_email"]["unique"]
        grant_indexes = {ix["name"] for ix in inspector.get_indexes("credit_grants")}
        assert {"ix_credit_grants_user_expires", "ix_credit_grants_unswept"} <= (
            grant_indexes
        )
        ledger_uniques = {
            uc["name"] for uc in inspector.get_unique_constraints("credit_ledger")
        }
        assert "uq_credit_ledger_idempotency_key" in ledger_uniques

    def test_balance_check_constraint(self, engine):
        _run(engine, "upgrade")

        with pytest.raises(IntegrityError), engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO users (id, external_id, email, credit_balance) "
                    "VALUES ('00000000000000000000000000000001', 'u1', "
                    "'u1@example.com', -1)"
                )
            )

    def test_defaults_for_new_user(self, engine):
        _run(engine, "upgrade")

        with engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO users (id, external_id, email) "
                    "VALUES ('00000000000000000000000000000002', 'u2', "
                    "'u2@example.com')"
                )
            )
            row = conn.execute(
                text(
                    "SELECT credit_balance, credit_balance_version, "
                    "low_balance_threshold, auto_top_up_amount FROM users"
                )
            ).one()

        assert tuple(row) == (0, 0, 5, 0)


class TestDowngrade:
    """Schema after downgrade()."""

    def test_drops_everything(self, engine):
        _run(engine, "upgrade")
        _run(engine, "downgrade")

        assert inspect(engine).get_table_names() == []
