"""
Migration runner script
Usage: python run_migration.py [create_schema] [upgrade|downgrade]
"""

import importlib
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


def run_migration(name: str = "create_schema", direction: str = "upgrade"):
    """Run upgrade() or downgrade() from a module in migrations/"""
    if not (MIGRATIONS_DIR / f"{name}.py").exists():
        logger.error(f"Migration not found: {name}")
        sys.exit(1)

    module = importlib.import_module(f"migrations.{name}")
    step = getattr(module, direction, None)
    if step is None:
        logger.error(f"Migration {name} has no {direction}() step")
        sys.exit(1)

    logger.info(f"Running {name}.{direction}()")
    step()
    logger.info("✅ Migration completed successfully!")


if __name__ == "__main__":
    args = sys.argv[1:]
    try:
        run_migration(*args[:2])
    except Exception as e:
        logger.error(f"❌ Migration failed: {e}")
        sys.exit(1)
