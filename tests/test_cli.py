"""Tests for CLI module - macro commands, replay exit codes and command structure."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from pymagmod.cli import app, format_value, resolve_endpoint
from pymagmod.macro import save
from pymagmod.messages import WriteMultiple, WriteSingle
from pymagmod.types import Endpoint, RegisterBank

runner = CliRunner()

HR = RegisterBank.HOLDING_REGISTER


@pytest.fixture
def macro_path(tmp_path: Path) -> Path:
    """Macro with two holding registers and one coil, recorded against 192.0.2.10:502."""
    batch = [WriteSingle(RegisterBank.COIL, 5, True), WriteMultiple(HR, 10, (100, 200))]
    return save(batch, tmp_path / "flow", endpoint=Endpoint("192.0.2.10", 502))


# ============================================================================
# Helper Tests
# ============================================================================


class TestFormatValue:
    """Test value formatting for display."""

    def test_bool_formatting(self) -> None:
        assert format_value(True) == "true"
        assert format_value(False) == "false"

    def test_int_formatting(self) -> None:
        assert format_value(65535) == "65535"


class TestResolveEndpoint:
    """Command-line target versus the endpoint recorded in the macro."""

    def test_host_overrides_recorded(self) -> None:
        recorded = Endpoint("192.0.2.10", 502)
        assert resolve_endpoint("plc.local:1502", None, recorded) == Endpoint("plc.local", 1502)

    def test_port_overrides_recorded_port(self) -> None:
        recorded = Endpoint("192.0.2.10", 502)
        assert resolve_endpoint(None, 5020, recorded) == Endpoint("192.0.2.10", 5020)

    def test_recorded_used(self) -> None:
        recorded = Endpoint("192.0.2.10", 502)
        assert resolve_endpoint(None, None, recorded) is recorded


# ============================================================================
# Command Tests
# ============================================================================


def test_show_command(macro_path: Path) -> None:
    """Test show prints header and one line per directive."""
    result = runner.invoke(app, ["show", str(macro_path)])

    assert result.exit_code == 0
    assert "Endpoint:        192.0.2.10:502" in result.stdout
    assert "Directives:      3" in result.stdout
    assert "0x4000A" in result.stdout
    assert "0x00005" in result.stdout


def test_show_command_json(macro_path: Path) -> None:
    """Test show command with JSON output."""
    result = runner.invoke(app, ["show", str(macro_path), "--json"])

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["version"] == 1
    assert data["endpoint"] == "192.0.2.10:502"
    assert data["directives"][0] == {"bank": "coil", "address": 5, "reference": "0x00005", "value": True}
    assert [d["value"] for d in data["directives"][1:]] == [100, 200]


def test_show_invalid_file(tmp_path: Path) -> None:
    """Test a malformed macro exits with status 2."""
    bad = tmp_path / "bad.magmod"
    bad.write_bytes(b"garbage")
    result = runner.invoke(app, ["show", str(bad)])

    assert result.exit_code == 2
    assert "Macro file" in result.output


def test_replay_dry_run(macro_path: Path) -> None:
    """Test replay --dry-run lists directives without connecting."""
    with patch("pymagmod.cli.create_client_factory") as mock_factory:
        result = runner.invoke(app, ["replay", str(macro_path), "--dry-run"])

    assert result.exit_code == 0
    assert "[DRY RUN] Target 192.0.2.10:502, 3 directives" in result.stdout
    assert "Setting Register 0x4000B to 200" in result.stdout
    mock_factory.assert_not_called()


def test_replay_success(macro_path: Path, factory, device) -> None:
    """Test replay applies every directive in order and exits 0."""
    with patch("pymagmod.cli.create_client_factory", return_value=factory) as mock_factory:
        result = runner.invoke(app, ["replay", str(macro_path), "--unit-id", "3"])

    assert result.exit_code == 0
    assert "Connection established. Beginning command-flow..." in result.stdout
    assert "Setting Coil 0x00005 to true" in result.stdout
    assert "3/3 directives applied" in result.stdout
    assert device.banks[HR] == {10: 100, 11: 200}
    assert device.connects == [Endpoint("192.0.2.10", 502)]
    mock_factory.assert_called_once_with(3, 3.0, 1)


def test_replay_host_option(macro_path: Path, factory, device) -> None:
    """Test --host replaces the recorded endpoint."""
    with patch("pymagmod.cli.create_client_factory", return_value=factory):
        result = runner.invoke(app, ["replay", str(macro_path), "--host", "192.0.2.77", "--port", "1502"])

    assert result.exit_code == 0
    assert device.connects == [Endpoint("192.0.2.77", 1502)]


def test_replay_directive_failure(macro_path: Path, factory, device) -> None:
    """Test a rejected directive stops the replay with status 1."""
    device.illegal_addresses.add((HR, 10))
    with patch("pymagmod.cli.create_client_factory", return_value=factory):
        result = runner.invoke(app, ["replay", str(macro_path)])

    assert result.exit_code == 1
    assert "1/3 directives applied" in result.output
    assert "Directive 1" in result.output
    assert 11 not in device.banks[HR]


def test_replay_keep_going(macro_path: Path, factory, device) -> None:
    """Test --keep-going attempts the remaining directives."""
    device.illegal_addresses.add((HR, 10))
    with patch("pymagmod.cli.create_client_factory", return_value=factory):
        result = runner.invoke(app, ["replay", str(macro_path), "--keep-going"])

    assert result.exit_code == 1
    assert "2/3 directives applied" in result.output
    assert device.banks[HR] == {11: 200}


def test_replay_connection_refused(macro_path: Path, factory, device) -> None:
    """Test a refused connection exits with status 3."""
    device.refuse_connect = True
    with patch("pymagmod.cli.create_client_factory", return_value=factory):
        result = runner.invoke(app, ["replay", str(macro_path)])

    assert result.exit_code == 3
    assert "Connection/Modbus error" in result.output


def test_replay_check(macro_path: Path, factory, device) -> None:
    """Test --check connects and disconnects without writing."""
    with patch("pymagmod.cli.create_client_factory", return_value=factory):
        result = runner.invoke(app, ["replay", str(macro_path), "--check"])

    assert result.exit_code == 0
    assert "Connection successful." in result.stdout
    assert device.calls == []


def test_replay_requires_target(tmp_path: Path) -> None:
    """Test a macro without a recorded endpoint needs --host."""
    path = save([WriteSingle(HR, 0, 1)], tmp_path / "anon")
    result = runner.invoke(app, ["replay", str(path)])

    assert result.exit_code == 2
    assert "--host is required" in result.output


def test_replay_missing_file(tmp_path: Path) -> None:
    """Test an unreadable macro exits with status 2."""
    result = runner.invoke(app, ["replay", str(tmp_path / "missing.magmod"), "--host", "192.0.2.1"])

    assert result.exit_code == 2


def test_replay_dry_run_and_check_exclusive(macro_path: Path) -> None:
    result = runner.invoke(app, ["replay", str(macro_path), "--dry-run", "--check"])
    assert result.exit_code == 2


@patch("pymagmod.cli.Console")
@patch("pymagmod.cli.create_client_factory")
def test_interactive_connects_to_target(mock_factory: MagicMock, mock_console_class: MagicMock) -> None:
    """Test interactive passes the target to the console as a connect command."""
    mock_console = MagicMock()
    mock_console.execute = AsyncMock(return_value=True)
    mock_console.run = AsyncMock()
    mock_console_class.return_value = mock_console

    result = runner.invoke(app, ["interactive", "192.0.2.10:5020", "--unit-id", "2"])

    assert result.exit_code == 0
    mock_factory.assert_called_once_with(2, 3.0, 1)
    mock_console.execute.assert_awaited_once_with("connect 192.0.2.10:5020")
    mock_console.run.assert_awaited_once()


def test_info_command() -> None:
    """Test info command lists bank limits."""
    result = runner.invoke(app, ["info"])

    assert result.exit_code == 0
    assert "pymagmod version:" in result.stdout
    assert "holding_register" in result.stdout
    assert "read-only" in result.stdout


def test_info_command_json() -> None:
    """Test info command with JSON output."""
    result = runner.invoke(app, ["info", "--json"])

    assert result.exit_code == 0
    data = json.loads(result.stdout)
    assert data["macro_format"] == 1
    assert data["limits"]["holding_register"] == {"max_read": 125, "max_write": 123}
    assert data["limits"]["input_register"]["max_write"] == 0


def test_command_help() -> None:
    """Test that help text is available for all commands."""
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for name in ("replay", "show", "interactive", "info"):
        assert name in result.stdout


def test_version_flag() -> None:
    """Test --version flag."""
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "pymagmod" in result.stdout
