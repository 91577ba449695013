"""
Tests for the command line interface.
"""

import json

import pytest
from click.testing import CliRunner

from plugmesh.cli import main
from plugmesh.config import BalancerConfig, Config, reset_config, set_config


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestInit:
    """Tests for plugmesh init."""

    def test_writes_config(self, tmp_path):
        runner = CliRunner()
        result = runner.invoke(main, [
            "init", "--node-id", "10.0.0.12:8080", "--priority", "1",
            "--peer", "10.0.0.13:8080", "--peer", "10.0.0.14:8080",
            "--data-dir", str(tmp_path),
        ])

        assert result.exit_code == 0, result.output
        config = Config.load(tmp_path)
        assert config.node_id == "10.0.0.12:8080"
        assert config.priority == 1
        assert config.peers == ["10.0.0.13:8080", "10.0.0.14:8080"]

    def test_rejects_out_of_range_priority(self, tmp_path):
        result = CliRunner().invoke(main, ["init", "--priority", "6", "--data-dir", str(tmp_path)])
        assert result.exit_code != 0
        assert not Config.exists(tmp_path)

    def test_priority_range_follows_configured_classes(self, tmp_path):
        Config(data_dir=tmp_path, balancer=BalancerConfig(max_priority=7, breaker_amps=15)).save()

        result = CliRunner().invoke(
            main, ["init", "--priority", "7", "--data-dir", str(tmp_path)], input="y\n"
        )

        assert result.exit_code == 0, result.output
        config = Config.load(tmp_path)
        assert config.priority == 7
        assert config.balancer.max_priority == 7
        assert config.balancer.breaker_amps == 15


class TestConfigCommand:
    """Tests for plugmesh config."""

    def test_set_nested_value(self, tmp_path):
        Config(data_dir=tmp_path).save()
        runner = CliRunner()

        result = runner.invoke(main, ["config", "balancer.breaker_amps", "15", "--data-dir", str(tmp_path)])

        assert result.exit_code == 0, result.output
        assert Config.load(tmp_path).balancer.breaker_amps == 15
        assert Config.load(tmp_path).circuit_limit_watts == pytest.approx(1320.0)

    def test_get_value(self, tmp_path):
        Config(data_dir=tmp_path, priority=2).save()
        result = CliRunner().invoke(main, ["config", "priority", "--data-dir", str(tmp_path)])
        assert result.exit_code == 0
        assert json.loads(result.output.strip()) == 2

    def test_unknown_key(self, tmp_path):
        result = CliRunner().invoke(main, ["config", "balancer.nope", "1", "--data-dir", str(tmp_path)])
        assert result.exit_code == 1
        assert "Unknown setting" in result.output


class TestReport:
    """Tests for plugmesh report."""

    def test_invalid_sender_rejected(self):
        result = CliRunner().invoke(main, ["report", "bad id!", "100", "--to", "127.0.0.1:1"])
        assert result.exit_code == 1
        assert "Invalid report" in result.output

    def test_priority_checked_against_configured_classes(self):
        set_config(Config(balancer=BalancerConfig(max_priority=2)))
        result = CliRunner().invoke(main, ["report", "fridge", "100", "--priority", "3", "--to", "127.0.0.1:1"])
        assert result.exit_code == 1
        assert "priority" in result.output
