"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import Engine, text

from .api.endpoints import init_dependencies, router
from .config import AppConfig, get_config, validate_config
from .core.collaborators import LoggingAnalyticsReporter, LoggingContentPublisher
from .core.definition_manager import DefinitionManager
from .core.error_recovery import RetryConfig
from .core.evaluator import ConditionEvaluator
from .core.exceptions import WorkflowEngineError, create_error_response
from .core.execution_engine import Collaborator, ExecutionEngine
from .core.logging import get_logger, setup_logging
from .core.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware, status_code_for
from .core.scheduler import Scheduler
from .core.stores import DefinitionStore, RunStore
from .models.configs import NodeType
from .storage.database import build_engine, create_tables, get_session_factory
from .storage.migrations import run_migrations
from .storage.sql_store import SqlDefinitionStore, SqlRunStore


class ApplicationState:
    """Container for application state and components."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.database_engine: Optional[Engine] = None
        self.definition_manager: Optional[DefinitionManager] = None
        self.execution_engine: Optional[ExecutionEngine] = None
        self.logger = None


# Global application state
app_state = ApplicationState()


def initialize_database(config: AppConfig, logger) -> Engine:
    """Create the database engine, tables and indexes."""
    try:
        engine = build_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        create_tables(engine)
        logger.info("Database tables created")

        try:
            run_migrations(engine)
        except Exception as e:
            # Indexes are an optimization; startup continues without them
            logger.warning(f"Database migrations failed: {str(e)}")

        return engine

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def build_execution_engine(config: AppConfig, definition_store: DefinitionStore, run_store: RunStore) -> ExecutionEngine:
    """Build an execution engine with the settings of ``config``."""
    return ExecutionEngine(
        definition_store=definition_store,
        run_store=run_store,
        evaluator=ConditionEvaluator(
            new_follower_window=timedelta(days=config.new_follower_window_days),
            engagement_window=timedelta(days=config.engagement_window_days)
        ),
        scheduler=Scheduler(timezone=config.timezone),
        retry_config=RetryConfig(
            max_attempts=config.action_max_attempts,
            base_delay=config.action_retry_base_delay,
            max_delay=config.action_retry_max_delay,
            retryable_exceptions=[Exception]
        ),
        max_concurrent_runs=config.max_concurrent_runs,
        max_branch_workers=config.max_branch_workers,
        max_action_workers=config.max_action_workers,
        action_timeout=config.action_timeout,
        sweep_interval=config.sweep_interval,
        enforce_trigger_preconditions=config.enforce_trigger_preconditions
    )


def register_default_collaborators(engine: ExecutionEngine, logger) -> None:
    """Register the logging publisher and reporter as fallback action collaborators."""
    engine.register_collaborator(NodeType.CONTENT, LoggingContentPublisher())
    engine.register_collaborator(NodeType.ANALYTICS, LoggingAnalyticsReporter())
    logger.info("Default collaborators registered")


def graceful_shutdown(engine: ExecutionEngine, database_engine: Optional[Engine], logger) -> None:
    """Handle graceful shutdown of application components."""
    logger.info("Shutting down SocialFlow automation engine")

    try:
        engine.shutdown()
    except Exception as e:
        logger.error(f"Error during execution engine shutdown: {str(e)}")

    if database_engine is not None:
        database_engine.dispose()


def create_lifespan_handler(
    config: AppConfig,
    definition_store: Optional[DefinitionStore] = None,
    run_store: Optional[RunStore] = None,
    collaborators: Optional[Dict[NodeType, Collaborator]] = None
):
    """Create the application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger("socialflow.app")
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        database_engine = None
        defs, runs = definition_store, run_store
        if defs is None or runs is None:
            database_engine = initialize_database(config, logger)
            session_factory = get_session_factory(database_engine)
            defs = defs or SqlDefinitionStore(session_factory)
            runs = runs or SqlRunStore(session_factory)

        definition_manager = DefinitionManager(defs)
        execution_engine = build_execution_engine(config, defs, runs)
        register_default_collaborators(execution_engine, logger)
        for node_type, collaborator in (collaborators or {}).items():
            execution_engine.register_collaborator(node_type, collaborator)

        app_state.config = config
        app_state.database_engine = database_engine
        app_state.definition_manager = definition_manager
        app_state.execution_engine = execution_engine
        app_state.logger = logger

        init_dependencies(definition_manager=definition_manager, execution_engine=execution_engine)

        execution_engine.start_sweeper()
        logger.info("Application startup completed successfully")

        yield

        graceful_shutdown(execution_engine, database_engine, logger)

    return lifespan


def create_app(
    config: Optional[AppConfig] = None,
    definition_store: Optional[DefinitionStore] = None,
    run_store: Optional[RunStore] = None,
    collaborators: Optional[Dict[NodeType, Collaborator]] = None
) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Stores default to the SQLAlchemy implementations on ``config.database_url``;
    ``collaborators`` replace the logging defaults per node type.
    """
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Event-driven automation of social media workflows",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, definition_store, run_store, collaborators)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    if config.enable_performance_monitoring:
        app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)
    app.add_middleware(ErrorHandlingMiddleware)

    @app.exception_handler(WorkflowEngineError)
    async def workflow_error_handler(request: Request, exc: WorkflowEngineError):
        return JSONResponse(status_code=status_code_for(exc), content=create_error_response(exc))

    app.include_router(router)
    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""
    service = config.app_name.lower().replace(" ", "-")

    @app.get("/")
    async def root():
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": service, "version": config.app_version}

    @app.get("/health/detailed")
    async def detailed_health_check():
        """Health of the database and the execution engine."""
        checks = {}

        if app_state.database_engine is not None:
            try:
                with app_state.database_engine.connect() as connection:
                    connection.execute(text("SELECT 1"))
                checks["database"] = {"status": "healthy"}
            except Exception as e:
                get_logger(__name__).error(f"Database health check failed: {str(e)}")
                checks["database"] = {"status": "unhealthy", "error": str(e)}

        if app_state.execution_engine is not None:
            try:
                checks["execution_engine"] = {"status": "healthy", **app_state.execution_engine.get_statistics()}
            except Exception as e:
                checks["execution_engine"] = {"status": "unhealthy", "error": str(e)}
        else:
            checks["execution_engine"] = {"status": "unhealthy", "error": "not initialized"}

        overall = "healthy" if all(c["status"] == "healthy" for c in checks.values()) else "unhealthy"
        return JSONResponse(
            status_code=200 if overall == "healthy" else 503,
            content={
                "service": service,
                "version": config.app_version,
                "overall_status": overall,
                "checks": checks,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )
