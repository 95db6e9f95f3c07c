"""Create the Office Mafia tables in a PostgreSQL database."""

from __future__ import annotations

import logging
from pathlib import Path

from officemafia.backend.config import load_settings
from officemafia.backend.server import configure_logging

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).with_name("db_schema.sql")


def apply_schema(database_url: str, schema_path: Path = SCHEMA_PATH) -> None:
    import psycopg

    schema_sql = schema_path.read_text(encoding="utf-8")
    logger.info("Applying %s", schema_path.name)
    with psycopg.connect(database_url) as conn:
        with conn.cursor() as cur:
            cur.execute(schema_sql)
        conn.commit()


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    if not settings.database_url:
        raise SystemExit("OFFICEMAFIA_DATABASE_URL must point at the game database")
    apply_schema(settings.database_url)
    logger.info("Schema ready")


if __name__ == "__main__":
    main()
