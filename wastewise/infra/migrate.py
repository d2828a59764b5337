from __future__ import annotations

import os
import sys

import structlog
from alembic import command
from alembic.config import Config

from wastewise.infra.db import DATABASE_URL

ALEMBIC_CONFIG = os.getenv("ALEMBIC_CONFIG", "alembic.ini")

logger = structlog.get_logger(__name__)


def build_config(database_url: str | None = None) -> Config:
    url = database_url or DATABASE_URL
    config = Config(ALEMBIC_CONFIG)
    config.set_main_option("sqlalchemy.url", url)
    config.attributes["database_url"] = url
    return config


def run_upgrade(revision: str = "head", database_url: str | None = None) -> None:
    logger.info("migrate.upgrade", revision=revision)
    command.upgrade(build_config(database_url), revision)


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    run_upgrade(args[0] if args else "head")


if __name__ == "__main__":
    main()
