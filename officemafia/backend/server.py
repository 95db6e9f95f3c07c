"""Run the Office Mafia API with uvicorn."""

from __future__ import annotations

import logging

from officemafia.backend.config import load_settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)

    import uvicorn

    uvicorn.run(
        "officemafia.backend.api:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
