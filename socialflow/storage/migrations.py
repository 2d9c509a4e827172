"""Database migrations: query indexes and SQLite tuning."""

from sqlalchemy import Engine, text

from ..core.logging import get_logger

logger = get_logger(__name__)

_INDEXES = [
    # Sweeper lookup of due continuations
    "CREATE INDEX IF NOT EXISTS idx_continuations_state_fire_at ON continuations(state, fire_at)",
    # Run history per definition and per tenant
    "CREATE INDEX IF NOT EXISTS idx_workflow_runs_definition_created ON workflow_runs(definition_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_runs_tenant_created ON workflow_runs(tenant_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_runs_status ON workflow_runs(status)",
    "CREATE INDEX IF NOT EXISTS idx_node_outcomes_run ON node_outcomes(run_id, id)",
    "CREATE INDEX IF NOT EXISTS idx_workflow_definitions_state ON workflow_definitions(state, tenant_id)",
]


def create_indexes(engine: Engine):
    """Create the indexes used by run history and continuation sweeps."""
    try:
        with engine.connect() as connection:
            for statement in _INDEXES:
                connection.execute(text(statement))
            connection.commit()
            logger.info(f"Ensured {len(_INDEXES)} database indexes")
    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def optimize_database(engine: Engine):
    """Apply SQLite pragmas; a no-op for other backends."""
    if engine.url.get_backend_name() != "sqlite":
        return

    try:
        with engine.connect() as connection:
            if engine.url.database and engine.url.database != ":memory:":
                connection.execute(text("PRAGMA journal_mode=WAL"))
            connection.execute(text("PRAGMA cache_size=10000"))
            connection.execute(text("PRAGMA optimize"))
            connection.commit()
            logger.info("Applied SQLite optimizations")
    except Exception as e:
        logger.error(f"Failed to optimize database: {str(e)}")
        raise


def run_migrations(engine: Engine):
    """Run all migrations against the given engine."""
    logger.info("Starting database migrations")
    create_indexes(engine)
    optimize_database(engine)
    logger.info("Database migrations completed successfully")
