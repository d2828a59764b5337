from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect
from sqlmodel import SQLModel

from wastewise.domain import models  # noqa: F401
from wastewise.infra import migrate

ROOT = Path(__file__).resolve().parents[1]


def test_upgrade_head_matches_model_metadata(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(migrate, "ALEMBIC_CONFIG", str(ROOT / "alembic.ini"))
    database_url = f"sqlite:///{tmp_path / 'migrated.db'}"

    migrate.run_upgrade("head", database_url=database_url)

    inspector = inspect(create_engine(database_url))
    tables = set(inspector.get_table_names()) - {"alembic_version"}
    assert tables == set(SQLModel.metadata.tables)
    for name, table in SQLModel.metadata.tables.items():
        migrated_columns = {column["name"] for column in inspector.get_columns(name)}
        assert migrated_columns == {column.name for column in table.columns}, name


def test_build_config_prefers_explicit_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(migrate, "ALEMBIC_CONFIG", str(ROOT / "alembic.ini"))
    config = migrate.build_config("sqlite:///explicit.db")
    assert config.get_main_option("sqlalchemy.url") == "sqlite:///explicit.db"
    assert config.attributes["database_url"] == "sqlite:///explicit.db"
