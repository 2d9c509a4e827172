#!/usr/bin/env python3
"""Database initialization script."""

import sys

from socialflow.config import load_config
from socialflow.core.logging import setup_logging
from socialflow.storage.database import build_engine, create_tables
from socialflow.storage.migrations import run_migrations


def main():
    """Create the tables and indexes of the configured database."""
    config = load_config()
    logger = setup_logging(level=config.log_level.value)

    try:
        logger.info(f"Initializing database at {config.database_url}")
        engine = build_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )

        create_tables(engine)
        logger.info("Database tables created successfully")

        run_migrations(engine)
        logger.info("Database initialization completed")
        engine.dispose()

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
