"""Command line interface: run the server, manage the database, inspect configuration."""

import argparse
import json
import sys
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from .config import (
    AppConfig,
    LogLevel,
    get_development_config,
    get_production_config,
    get_testing_config,
    load_config,
    validate_config,
)
from .core.logging import get_logger, setup_logging
from .core.validator import Validator
from .models.core import WorkflowDefinition

logger = get_logger(__name__)

PRESETS: Dict[str, Callable[[], AppConfig]] = {
    "development": get_development_config,
    "production": get_production_config,
    "testing": get_testing_config,
}

# CLI flags that map one-to-one onto config fields
OVERRIDABLE_FIELDS = (
    "host", "port", "database_url", "log_level", "log_file", "timezone", "max_concurrent_runs"
)


def cmd_run(args: argparse.Namespace, config: AppConfig) -> int:
    import uvicorn

    from .factory import create_app

    logger.info(f"Starting {config.app_name} on {config.host}:{config.port} with {args.workers} worker(s)")
    if args.workers > 1:
        # Each worker process builds its own app from the environment
        uvicorn.run("socialflow.factory:create_app", factory=True, workers=args.workers,
                    **config.get_uvicorn_config())
    else:
        uvicorn.run(create_app(config), **config.get_uvicorn_config())
    return 0


def cmd_db(args: argparse.Namespace, config: AppConfig) -> int:
    """Create, migrate or rebuild the schema."""
    from .storage.database import build_engine, create_tables, drop_tables
    from .storage.migrations import run_migrations

    if not args.db_command:
        print("Database command required. Use --help for options.")
        return 1

    setup_logging(level=config.log_level.value)
    steps = {
        "init": [create_tables],
        "migrate": [run_migrations],
        "reset": [drop_tables, create_tables, run_migrations],
    }[args.db_command]

    engine = build_engine(config.database_url, echo=config.database_echo)
    try:
        for step in steps:
            logger.info(f"db {args.db_command}: {step.__name__}")
            step(engine)
    finally:
        engine.dispose()
    logger.info(f"db {args.db_command} finished")
    return 0


def cmd_validate(args: argparse.Namespace, config: AppConfig) -> int:
    """Print the violations of a definition stored as JSON."""
    with open(args.path, encoding="utf-8") as handle:
        payload = json.load(handle)

    try:
        definition = WorkflowDefinition.model_validate(payload)
    except ValidationError as e:
        print(f"Definition is malformed: {e}")
        return 1

    violations = Validator().validate(definition).violations
    if not violations:
        print(f"Definition '{definition.name}' is valid ({len(definition.nodes)} nodes)")
        return 0

    print(f"Definition '{definition.name}' has {len(violations)} violation(s):")
    for violation in violations:
        print(f"  - {violation}")
    return 1


def cmd_config(args: argparse.Namespace, config: AppConfig) -> int:
    if args.config_command == "show":
        for name, value in config.model_dump(mode="json").items():
            print(f"  {name}: {value}")
        return 0

    if args.config_command == "validate":
        try:
            validate_config(config)
        except ValueError as e:
            print(f"Configuration validation: FAILED\nError: {e}")
            return 1
        print("Configuration validation: PASSED")
        return 0

    print("Configuration command required. Use --help for options.")
    return 1


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="socialflow", description="Event-driven social media automation engine")

    parser.add_argument("--env", choices=sorted(PRESETS), help="Configuration preset instead of the environment")
    parser.add_argument("--config", help="Path to a .env file")
    parser.add_argument("--host")
    parser.add_argument("--port", type=int)
    parser.add_argument("--database-url")
    parser.add_argument("--log-level", choices=[level.value for level in LogLevel])
    parser.add_argument("--log-file")
    parser.add_argument("--timezone", help="IANA zone for queue slots and recurrences")
    parser.add_argument("--max-concurrent-runs", type=int)
    parser.add_argument("--reload", action="store_true")
    parser.add_argument("--debug", action="store_true")
    parser.set_defaults(handler=cmd_run, workers=1)

    commands = parser.add_subparsers(dest="command")

    run = commands.add_parser("run", help="Serve the HTTP API (default)")
    run.add_argument("--workers", type=int, default=1)
    run.set_defaults(handler=cmd_run)

    db = commands.add_parser("db", help="Database management")
    db.add_argument("db_command", nargs="?", choices=["init", "migrate", "reset"])
    db.set_defaults(handler=cmd_db)

    validate = commands.add_parser("validate", help="Check a definition JSON file")
    validate.add_argument("path")
    validate.set_defaults(handler=cmd_validate)

    config = commands.add_parser("config", help="Show or validate the configuration")
    config.add_argument("config_command", nargs="?", choices=["show", "validate"])
    config.set_defaults(handler=cmd_config)

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Preset or environment, then command line flags on top."""
    config = PRESETS[args.env]() if args.env else load_config(args.config)

    overrides = {name: getattr(args, name) for name in OVERRIDABLE_FIELDS if getattr(args, name) is not None}
    # store_true flags only override when given
    overrides.update({flag: True for flag in ("reload", "debug") if getattr(args, flag)})
    if not overrides:
        return config
    return AppConfig.model_validate({**config.model_dump(), **overrides})


def main(argv: Optional[List[str]] = None) -> int:
    args = create_argument_parser().parse_args(argv)

    try:
        config = load_configuration(args)
        if args.handler is cmd_run:
            validate_config(config)
        return args.handler(args, config)
    except (ValueError, OSError) as e:
        print(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
