"""
Tests for the CLI interface.
"""
import json
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from shell_ai.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from shell_ai.config.loader import AppConfig, ModelConfig
from shell_ai.sdk.llm_client import TransportError
from shell_ai.storage.ledger import ActiveLedger, DisabledLedger
from shell_ai.storage.models import LedgerEntry

runner = CliRunner()


def _entry(request_id="chatcmpl-1", minute=0, **overrides):
    values = dict(
        id=request_id,
        model="gpt-4.1-mini",
        prompt_text="list files in current directory",
        system_text="",
        response_text="ls -la",
        timestamp=datetime(2024, 1, 1, 12, minute, 0, tzinfo=timezone.utc),
        duration_ms=420,
        prompt_tokens=45,
        completion_tokens=12,
        total_tokens=57,
        estimated_cost=45 / 1e6 * 0.15 + 12 / 1e6 * 0.60,
    )
    values.update(overrides)
    return LedgerEntry(**values)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "logs.db"


@pytest.fixture
def mock_open_ledger(db_path):
    """Point the CLI at a temporary ledger."""
    with patch('shell_ai.cli.main.open_ledger') as mock_open:
        mock_open.side_effect = lambda: ActiveLedger(db_path)
        yield mock_open


def _seed(db_path, *entries):
    with ActiveLedger(db_path) as ledger:
        for entry in entries:
            ledger.persist(entry)


class TestLogsCommand:
    """Test the logs command."""

    def test_no_logs(self, mock_open_ledger):
        result = runner.invoke(app, ["logs"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No logs found" in result.output

    def test_formatted_entries(self, db_path, mock_open_ledger):
        """Test that output contains usage and cost information."""
        _seed(db_path, _entry())

        result = runner.invoke(app, ["logs"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Entry 1 - 2024-01-01 12:00:00 [gpt-4.1-mini]" in result.output
        assert "list files in current directory" in result.output
        assert "45 input + 12 output = 57 total" in result.output
        assert "$0.000014" in result.output
        assert "420ms" in result.output
        assert "chatcmpl-1" in result.output

    def test_error_entry_shown(self, db_path, mock_open_ledger):
        _seed(db_path, _entry("", response_text="", error="API request failed: 500"))

        result = runner.invoke(app, ["logs"])

        assert "ERROR: API request failed: 500" in result.output

    def test_limit(self, db_path, mock_open_ledger):
        _seed(db_path, *[_entry(f"req-{i}", minute=i) for i in range(5)])

        result = runner.invoke(app, ["logs", "-n", "2"])

        assert "req-4" in result.output
        assert "req-3" in result.output
        assert "req-2" not in result.output

    def test_json_output(self, db_path, mock_open_ledger):
        _seed(db_path, _entry())

        result = runner.invoke(app, ["logs", "--json"])

        assert result.exit_code == EXIT_CODE_PASS
        data = json.loads(result.output)
        assert data["request_id"] == "chatcmpl-1"
        assert data["total_tokens"] == 57
        assert data["estimated_cost_usd"] == pytest.approx(0.0000140, abs=1e-7)

    def test_path(self, db_path, mock_open_ledger):
        result = runner.invoke(app, ["logs", "--path"])

        assert result.exit_code == EXIT_CODE_PASS
        assert result.output.strip() == str(db_path)

    def test_status(self, db_path, mock_open_ledger):
        _seed(db_path, _entry("a"), _entry("b", minute=1, model="gpt-4"))

        result = runner.invoke(app, ["logs", "--status"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Total requests: 2" in result.output
        assert "Total tokens: 114" in result.output
        assert "gpt-4.1-mini" in result.output
        assert "gpt-4" in result.output

    def test_status_disabled(self):
        with patch('shell_ai.cli.main.open_ledger', return_value=DisabledLedger("/tmp/x.db")):
            result = runner.invoke(app, ["logs", "--status"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "disabled" in result.output
        assert "Total requests: 0" in result.output


class TestAskCommand:
    """Test the ask command."""

    @pytest.fixture
    def app_config(self):
        return AppConfig(models=[ModelConfig(
            name="gpt-4.1-mini",
            endpoint="https://api.openai.com/v1/chat/completions",
            auth_env_var="OPENAI_API_KEY",
        )])

    def test_ask_streams_answer(self, app_config):
        with patch('shell_ai.cli.main.load_config', return_value=app_config), \
                patch('shell_ai.cli.main.LLMClient') as mock_client_class:
            mock_client_class.return_value.query.return_value = "ls -la"

            result = runner.invoke(app, ["ask", "list", "files"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "ls -la" in result.output
        args, kwargs = mock_client_class.return_value.query.call_args
        assert args[0] == "list files"
        assert callable(kwargs["sink"])

    def test_ask_unknown_model(self, app_config):
        with patch('shell_ai.cli.main.load_config', return_value=app_config):
            result = runner.invoke(app, ["ask", "--model", "nope", "hi"])

        assert result.exit_code == EXIT_CODE_FAIL

    def test_ask_missing_config(self):
        result = runner.invoke(app, ["ask", "--config", "does-not-exist.yaml", "hi"])

        assert result.exit_code == EXIT_CODE_FAIL

    def test_ask_transport_error(self, app_config):
        with patch('shell_ai.cli.main.load_config', return_value=app_config), \
                patch('shell_ai.cli.main.LLMClient') as mock_client_class:
            mock_client_class.return_value.query.side_effect = TransportError(
                "API request failed: 500 Internal Server Error"
            )

            result = runner.invoke(app, ["ask", "hi"])

        assert result.exit_code == EXIT_CODE_FAIL
        mock_client_class.return_value.query.assert_called_once()
