"""
Alembic runner for the execution schema, configured in code (no alembic.ini).

Usage:
    python -m mfgerp.db.run_migrations upgrade [head]
    python -m mfgerp.db.run_migrations downgrade [-1]
    python -m mfgerp.db.run_migrations current | heads | history
    python -m mfgerp.db.run_migrations stamp <revision>
"""

import logging
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from alembic import command
from alembic.config import Config

from mfgerp.db.config import get_settings

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

# command name -> (alembic command, default positional args)
COMMANDS: Dict[str, Tuple[Callable[..., None], List[str]]] = {
    "upgrade": (command.upgrade, ["head"]),
    "downgrade": (command.downgrade, ["-1"]),
    "current": (command.current, []),
    "heads": (command.heads, []),
    "history": (command.history, []),
    "stamp": (command.stamp, []),
}


# PUBLIC_INTERFACE
def build_config(database_url: Optional[str] = None) -> Config:
    """
    Alembic Config pointing at the packaged migrations.

    The URL is the sync form of the configured database; env.py swaps in the
    async driver when it connects.
    """
    cfg = Config()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    cfg.set_main_option("sqlalchemy.url", database_url or get_settings().sync_database_url)
    return cfg


# PUBLIC_INTERFACE
def upgrade_head() -> None:
    """Bring the schema to the latest revision; used at service startup."""
    logger.info("Upgrading schema to head from %s", MIGRATIONS_DIR)
    command.upgrade(build_config(), "head")


# PUBLIC_INTERFACE
def main(argv: Optional[List[str]] = None) -> None:
    """Dispatch a command line to the matching Alembic command."""
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        print(f"Usage: run_migrations <{'|'.join(COMMANDS)}> [args]")
        sys.exit(1)

    name, rest = args[0], args[1:]
    if name not in COMMANDS:
        print(f"Unsupported Alembic command: {name}")
        sys.exit(2)
    func, defaults = COMMANDS[name]
    if name == "stamp" and not rest:
        print("Usage: stamp <revision>")
        sys.exit(2)
    func(build_config(), *(rest or defaults))


if __name__ == "__main__":
    main()
