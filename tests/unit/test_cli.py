"""Tests for the bulk-export command-line interface."""

import json
import logging

import pytest

import bulkexport.__main__ as cli
from bulkexport.lib.coordinator import PassResult, PassState, StopReason
from bulkexport.lib.properties import JsonFilePropertyStore
from bulkexport.lib.watermark import MAX_ID_KEY


@pytest.fixture(autouse=True)
def restore_root_logging():
    """main() reconfigures the root logger; put it back afterwards."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "export.yaml"
    path.write_text(
        "client_id: client\n"
        "client_secret: secret\n"
        "base_url: https://api.example.com\n"
        "sink_path: ./sink.csv\n"
        "state_dir: ./state\n"
    )
    return path


class TestCLIArguments:
    """Tests for argument handling."""

    def test_help(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--help"])

        assert exc_info.value.code == 0
        assert "bulk-export" in capsys.readouterr().out

    def test_unknown_command(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["merge", "--config", "x.yaml"])
        assert exc_info.value.code == 2

    def test_missing_config_file(self, tmp_path, capsys):
        assert cli.main(["status", "--config", str(tmp_path / "missing.yaml")]) == 1
        assert "not found" in capsys.readouterr().err


class TestPassCommands:
    """Tests for create/check exit codes and output."""

    @pytest.mark.parametrize(
        "state, reason, exit_code",
        [
            (PassState.DONE, None, 0),
            (PassState.STOPPED, StopReason.QUEUE_FULL, 0),
            (PassState.FAILED, StopReason.AUTH_FAILED, 1),
        ],
    )
    def test_create_exit_code(self, monkeypatch, config_file, capsys, state, reason, exit_code):
        monkeypatch.setattr(
            cli,
            "create_export_jobs",
            lambda config: PassResult(pass_name="create", state=state, reason=reason),
        )

        assert cli.main(["create", "--config", str(config_file)]) == exit_code
        assert f"CREATE PASS: {state.value.upper()}" in capsys.readouterr().out

    def test_check_json_output(self, monkeypatch, config_file, capsys):
        monkeypatch.setattr(
            cli,
            "check_and_merge_jobs",
            lambda config: PassResult(pass_name="check", jobs_merged=["a"], rows_inserted=3),
        )

        assert cli.main(["check", "--config", str(config_file), "--json"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["jobs_merged"] == ["a"]
        assert data["rows_inserted"] == 3


class TestAdminCommands:
    """Tests for status and reset."""

    def test_status_empty(self, config_file, capsys):
        assert cli.main(["status", "--config", str(config_file)]) == 0

        out = capsys.readouterr().out
        assert "Max id:         0" in out
        assert "No pending export jobs." in out

    def test_status_json(self, config_file, tmp_path, capsys):
        JsonFilePropertyStore(tmp_path / "state").set(MAX_ID_KEY, "42")

        assert cli.main(["status", "--config", str(config_file), "--json"]) == 0

        data = json.loads(capsys.readouterr().out)
        assert data["watermark"]["maxIngestedId"] == 42
        assert data["pending_jobs"] == []

    def test_reset_requires_confirmation(self, config_file, tmp_path):
        store = JsonFilePropertyStore(tmp_path / "state")
        store.set(MAX_ID_KEY, "42")

        assert cli.main(["reset", "--config", str(config_file)]) == 1
        assert store.get(MAX_ID_KEY) == "42"

    def test_reset(self, config_file, tmp_path):
        store = JsonFilePropertyStore(tmp_path / "state")
        store.set(MAX_ID_KEY, "42")

        assert cli.main(["reset", "--config", str(config_file), "--yes"]) == 0
        assert store.get(MAX_ID_KEY) is None
