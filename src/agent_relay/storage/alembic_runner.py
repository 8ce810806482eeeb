"""Programmatic Alembic upgrades for the session store."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)


def find_alembic_root(start: Path | None = None) -> Path:
    """Nearest ancestor holding ``alembic.ini`` next to the ``alembic/`` scripts."""

    here = (start or Path(__file__)).resolve()
    for candidate in here.parents:
        if (candidate / "alembic.ini").is_file() and (candidate / "alembic").is_dir():
            return candidate
    raise FileNotFoundError(f"No alembic.ini found above {here}")


def upgrade_head(db_path: Path, *, revision: str = "head") -> None:
    root_dir = find_alembic_root()
    config = Config(str(root_dir / "alembic.ini"))
    config.set_main_option("script_location", str(root_dir / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    logger.debug("Upgrading %s to %s", db_path, revision)
    command.upgrade(config, revision)
