"""Command line entry points."""

import argparse
import json

import pytest

from migration_engine.cli import build_config, main
from migration_engine.errors import ConfigurationError
from migration_engine.models.execution import ErrorHandling, LoadStrategy


def namespace(**overrides):
    values = {
        "project": "shop",
        "config": None,
        "batch_size": None,
        "parallelism": None,
        "error_handling": None,
        "load_strategy": None,
        "no_validate": False,
    }
    values.update(overrides)
    return argparse.Namespace(**values)


def test_build_config_defaults():
    config = build_config(namespace())
    assert config.project_id == "shop"
    assert config.batch_size == 1000
    assert config.validate_data is True


def test_flags_override_config_file(tmp_path):
    path = tmp_path / "pipeline.json"
    path.write_text(json.dumps({"batch_size": 50, "parallelism": 2, "load_strategy": "append"}))

    config = build_config(namespace(
        config=str(path),
        parallelism=4,
        error_handling="skip-and-log",
        no_validate=True,
    ))

    assert config.batch_size == 50
    assert config.parallelism == 4
    assert config.load_strategy == LoadStrategy.APPEND
    assert config.error_handling == ErrorHandling.SKIP_AND_LOG
    assert config.validate_data is False


def test_invalid_batch_size_is_rejected():
    with pytest.raises(ConfigurationError):
        build_config(namespace(batch_size=0))


def test_no_command_prints_help():
    assert main([]) == 1


def test_run_unknown_project_fails(tmp_path, capsys):
    code = main([
        "run",
        "--projects-dir", str(tmp_path),
        "--project", "missing",
        "--reports-dir", str(tmp_path / "logs"),
    ])

    assert code == 1
    out = capsys.readouterr().out
    assert "Status: failed" in out
    assert not (tmp_path / "logs").exists()


def test_discover_unknown_project_fails(tmp_path):
    assert main(["discover", "--projects-dir", str(tmp_path), "--project", "missing"]) == 1
