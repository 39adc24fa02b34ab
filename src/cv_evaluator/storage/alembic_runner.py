"""Run Alembic migrations programmatically."""

from __future__ import annotations

import threading
from pathlib import Path

from alembic import command
from alembic.config import Config

_UPGRADE_LOCK = threading.Lock()


def upgrade_head(db_path: Path) -> None:
    """Apply Alembic migrations up to head for the given SQLite database.

    Worker slots start concurrently in one process; the lock keeps their
    ``init_schema`` calls from racing on the ``alembic_version`` table.
    """

    root_dir = Path(__file__).resolve().parents[3]
    config = Config(str(root_dir / "alembic.ini"))
    config.set_main_option("script_location", str(root_dir / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    with _UPGRADE_LOCK:
        command.upgrade(config, "head")
