"""
Unit tests for the command line interface.
"""

import json

from click.testing import CliRunner

from overwatch import __version__
from overwatch.__main__ import cli


def parse_json_output(output: str) -> dict:
    # log lines may precede the pretty-printed result
    return json.loads(output[output.index("{\n"):])


class TestCli:
    """Test the click commands."""

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_route(self, tmp_path):
        config = tmp_path / "overwatch.yaml"
        config.write_text(f"database:\n  path: {tmp_path / 'overwatch.db'}\n")

        result = CliRunner().invoke(cli, [
            "route", "--config", str(config), "--type", "search", "--content", "weather in Oslo",
        ])

        assert result.exit_code == 0, result.output
        data = parse_json_output(result.output)
        assert data["status"] == "delegated"
        assert data["agent"] == "web-agent"
        assert data["agent_id"]

    def test_route_with_invalid_config(self, tmp_path):
        config = tmp_path / "overwatch.yaml"
        config.write_text("workload:\n  high_threshold: 95\n  critical_threshold: 90\n")

        result = CliRunner().invoke(cli, ["route", "--config", str(config), "--content", "hi"])

        assert result.exit_code == 1

    def test_health_unreachable(self):
        result = CliRunner().invoke(cli, ["health", "--url", "http://127.0.0.1:1/health", "--timeout", "1"])

        assert result.exit_code == 1
