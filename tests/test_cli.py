"""Smoke tests for the Conduit CLI."""

from unittest.mock import AsyncMock, patch

from click.testing import CliRunner

from conduit import __version__
from conduit.cli import cli


def test_help() -> None:
    result = CliRunner().invoke(cli, ["--help"])
    assert result.exit_code == 0
    assert "Conduit" in result.output
    assert "chat" in result.output
    assert "check" in result.output


def test_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert f"conduit, version {__version__}" in result.output


def test_check_reports_version() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(), patch(
        "conduit.commands.check.agent_version",
        AsyncMock(return_value="2.0.14 (Claude Code)"),
    ):
        result = runner.invoke(cli, ["check"])
    assert result.exit_code == 0
    assert "claude: 2.0.14 (Claude Code)" in result.output


def test_check_missing_binary() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(), patch(
        "conduit.commands.check.agent_version", AsyncMock(return_value=None)
    ) as mock_version:
        result = runner.invoke(cli, ["check", "--binary", "not-a-real-agent"])
    assert result.exit_code == 1
    assert mock_version.call_args.args[0] == "not-a-real-agent"


def test_check_bad_config() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem():
        with open("conduit.yaml", "w") as fh:
            fh.write("colour: blue\n")
        result = runner.invoke(cli, ["check"])
    assert result.exit_code == 1
    assert "Unknown setting" in result.output


def test_chat_flags() -> None:
    result = CliRunner().invoke(cli, ["chat", "--help"])
    assert result.exit_code == 0
    for flag in ("--dangerous", "--timeout", "--transcript", "--config"):
        assert flag in result.output


def test_chat_unavailable_binary() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(), patch(
        "conduit.commands.chat.AgentSession.is_available",
        AsyncMock(return_value=False),
    ):
        result = runner.invoke(cli, ["chat"])
    assert result.exit_code == 1
    assert "not installed" in result.output


def test_chat_commands_and_quit() -> None:
    runner = CliRunner()
    with runner.isolated_filesystem(), patch(
        "conduit.commands.chat.AgentSession.is_available",
        AsyncMock(return_value=True),
    ):
        result = runner.invoke(cli, ["chat"], input="/stats\n/bogus\n/quit\n")
    assert result.exit_code == 0
    assert "turns: 0" in result.output
    assert "Unknown command: /bogus" in result.output
