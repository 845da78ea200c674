"""Tests for the command line entry point."""
import json
import logging

import pytest

from notekeeper.main import main, parse_args


@pytest.fixture(autouse=True)
def _restore_logger():
    """Drop the handlers main() attaches so later tests log normally."""
    logger = logging.getLogger("notekeeper")
    handlers = list(logger.handlers)
    level = logger.level
    yield
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)


def run(capsys, *argv):
    code = main(list(argv))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


class TestParseArgs:
    """Tests for argument parsing."""

    def test_mode_choices(self):
        args = parse_args(["mode", "remote-api", "--user-id", "3", "--token", "t"])
        assert (args.command, args.target, args.user_id) == ("mode", "remote-api", 3)

    def test_unknown_mode_rejected(self):
        with pytest.raises(SystemExit):
            parse_args(["mode", "ftp"])


class TestCommands:
    """Tests for the subcommands against a temporary store."""

    def test_status_of_new_store(self, test_config, capsys):
        code, out, _ = run(capsys, "status")
        assert code == 0
        status = json.loads(out)
        assert status["mode"] == "local"
        assert status["lastSync"] is None
        assert status["webdavConfigured"] is False
        assert set(status["counts"].values()) == {0}

    def test_sync_in_local_mode_is_a_no_op(self, test_config, capsys):
        code, out, _ = run(capsys, "sync")
        assert code == 0
        assert json.loads(out) == {"mode": "local", "merge": None}

    def test_export_then_import(self, test_config, capsys, tmp_path):
        path = tmp_path / "backup.json"
        code, out, _ = run(capsys, "export", str(path))
        assert code == 0
        assert json.loads(out)["exported"] == str(path)
        assert path.exists()

        code, out, _ = run(capsys, "import", str(path))
        assert code == 0
        assert set(json.loads(out)["imported"].values()) == {0}

    def test_import_missing_file(self, test_config, capsys, tmp_path):
        code, _, err = run(capsys, "import", str(tmp_path / "missing.json"))
        assert code == 1
        assert '"STORAGE_READ_FAILED"' in err

    def test_remote_document_needs_configuration(self, test_config, capsys):
        code, _, err = run(capsys, "mode", "remote-document")
        assert code == 1
        assert '"REMOTE_NOT_CONFIGURED"' in err

        code, out, _ = run(capsys, "status")
        assert json.loads(out)["mode"] == "local"

    def test_remote_api_needs_session(self, test_config, capsys):
        code, _, err = run(capsys, "mode", "remote-api")
        assert code == 1
        assert '"AUTHENTICATION_REQUIRED"' in err

    def test_token_without_user(self, test_config, capsys):
        with pytest.raises(SystemExit):
            main(["mode", "remote-api", "--token", "abc"])

    def test_remote_api_session_carries_over(self, test_config, store, capsys):
        """A session saved by an earlier run keeps remote-api mode."""
        store.set_metadata("storage-mode", "remote-api")
        store.set_metadata("api-session", {"user_id": 1, "token": "t"})

        code, out, _ = run(capsys, "status")
        assert code == 0
        assert json.loads(out)["mode"] == "remote-api"

    def test_sync_reports_unrestorable_mode(self, test_config, store, capsys):
        store.set_metadata("storage-mode", "remote-api")

        code, _, err = run(capsys, "sync")
        assert code == 1
        assert '"AUTHENTICATION_REQUIRED"' in err

    def test_metrics_lists_recorded_operations(self, test_config, capsys, tmp_path):
        path = tmp_path / "backup.json"
        run(capsys, "export", str(path))
        run(capsys, "import", str(path))

        code, out, _ = run(capsys, "metrics")
        assert code == 0
        report = json.loads(out)
        assert report["transfer.import"]["count"] == 1
        assert report["transfer.import"]["error_count"] == 0
