from pathlib import Path
import logging
from typing import Set
from .db import Database

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


async def run_migrations(db: Database, migrations_dir: Path = MIGRATIONS_DIR) -> int:
    """
    Apply pending SQL migrations in filename order.

    Each file runs in its own transaction together with its bookkeeping row,
    so a failing migration leaves no partial schema behind.
    Returns the number of migrations applied.
    """
    await db.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            name TEXT PRIMARY KEY,
            applied_at TIMESTAMPTZ DEFAULT NOW()
        )
        """
    )

    if not migrations_dir.exists():
        logger.warning("Migrations directory not found; skipping migrations")
        return 0

    applied = await _get_applied_migrations(db)
    pending = [p for p in sorted(migrations_dir.glob("*.sql")) if p.name not in applied]
    if not pending:
        logger.info("No pending migrations")
        return 0

    for path in pending:
        logger.info(f"Applying migration {path.name}")
        async with db.transaction() as conn:
            await conn.execute(path.read_text())
            await conn.execute(
                "INSERT INTO schema_migrations (name) VALUES ($1)",
                path.name
            )
    return len(pending)


async def _get_applied_migrations(db: Database) -> Set[str]:
    rows = await db.fetch("SELECT name FROM schema_migrations")
    return {row["name"] for row in rows}
