"""Tests for the command line interface."""

import json

import pytest
from sqlalchemy import inspect

from conftest import make_definition, price_reply_definition, trigger_node
from socialflow.config import LogLevel
from socialflow.startup import create_argument_parser, load_configuration, main
from socialflow.storage.database import build_engine


def parse(*argv):
    return create_argument_parser().parse_args(list(argv))


def write_definition(tmp_path, definition):
    path = tmp_path / "definition.json"
    path.write_text(json.dumps(definition.model_dump(mode="json")))
    return str(path)


class TestLoadConfiguration:

    def test_preset_with_overrides(self):
        config = load_configuration(parse("--env", "testing", "--port", "9001", "--timezone", "Asia/Tokyo",
                                          "--log-level", "ERROR", "--debug"))

        assert config.database_url == "sqlite:///:memory:"
        assert config.port == 9001
        assert config.timezone == "Asia/Tokyo"
        assert config.log_level == LogLevel.ERROR
        assert config.debug is True
        assert config.reload is False

    def test_invalid_override_rejected(self):
        with pytest.raises(ValueError):
            load_configuration(parse("--env", "testing", "--timezone", "Mars/Olympus"))

    def test_default_command_is_run(self):
        args = parse("--env", "testing")

        assert args.command is None
        assert args.handler.__name__ == "cmd_run"
        assert args.workers == 1


class TestCommands:

    def test_validate_valid_definition(self, tmp_path, capsys):
        path = write_definition(tmp_path, price_reply_definition())

        assert main(["--env", "testing", "validate", path]) == 0
        assert "is valid (3 nodes)" in capsys.readouterr().out

    def test_validate_reports_violations(self, tmp_path, capsys):
        path = write_definition(tmp_path, make_definition([trigger_node()], []))

        assert main(["--env", "testing", "validate", path]) == 1
        assert "NoTerminalAction" in capsys.readouterr().out

    def test_validate_malformed_file(self, tmp_path, capsys):
        path = tmp_path / "broken.json"
        path.write_text(json.dumps({"nodes": "nope"}))

        assert main(["--env", "testing", "validate", str(path)]) == 1
        assert "malformed" in capsys.readouterr().out

    def test_db_init_creates_tables(self, sqlite_url):
        assert main(["--env", "testing", "--database-url", sqlite_url, "--log-level", "WARNING", "db", "init"]) == 0

        engine = build_engine(sqlite_url)
        try:
            tables = set(inspect(engine).get_table_names())
        finally:
            engine.dispose()
        assert {"workflow_definitions", "workflow_runs"} <= tables

    def test_db_requires_subcommand(self, capsys):
        assert main(["--env", "testing", "db"]) == 1
        assert "Database command required" in capsys.readouterr().out

    def test_config_show_and_validate(self, capsys):
        assert main(["--env", "testing", "config", "show"]) == 0
        assert "database_url: sqlite:///:memory:" in capsys.readouterr().out

        assert main(["--env", "testing", "config", "validate"]) == 0
        assert "PASSED" in capsys.readouterr().out
