"""Script to run database migrations.

Usage:
    python scripts/migrate.py                   upgrade to head
    python scripts/migrate.py downgrade <rev>   step back to a revision
    python scripts/migrate.py current           show the applied revision
    python scripts/migrate.py create <message>  autogenerate from app.models
"""

import sys

from alembic import command
from alembic.config import Config

USAGE = "Usage: python scripts/migrate.py [downgrade <rev> | current | create <message>]"


def main(argv: list[str]) -> int:
    """Dispatch one migration command."""
    alembic_cfg = Config("alembic.ini")

    try:
        if not argv:
            print("Upgrading scheduling schema to head...")
            command.upgrade(alembic_cfg, "head")
        elif argv[0] == "downgrade" and len(argv) == 2:
            print(f"Downgrading scheduling schema to {argv[1]}...")
            command.downgrade(alembic_cfg, argv[1])
        elif argv[0] == "current":
            command.current(alembic_cfg, verbose=True)
            return 0
        elif argv[0] == "create" and len(argv) > 1:
            message = " ".join(argv[1:])
            print(f"Creating migration: {message}")
            command.revision(alembic_cfg, message=message, autogenerate=True)
        else:
            print(USAGE)
            return 2
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        return 1

    print("✓ Done")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
