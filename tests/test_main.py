"""
Test Command Line Module
=======================

Tests for the command line entry point.
"""

import pytest
from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

import main as cli


@pytest.fixture
def dialog_file(tmp_path, monkeypatch):
    monkeypatch.setenv("RULEBOT_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("RULEBOT_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setattr(cli, "setup_logging", lambda **kwargs: None)
    path = tmp_path / "dialog.yaml"
    path.write_text('"=hi": hello from yaml\n"^weather": sunny\n', encoding="utf-8")
    return path


class TestArguments:
    """Tests for argument parsing."""

    def test_test_mode(self):
        args = cli.parse_args(["--test", "hello", "user-1", "--dialog", "a.yaml", "b.yaml"])
        assert args.test == ["hello", "user-1"]
        assert args.dialog == ["a.yaml", "b.yaml"]
        assert args.port is None

    def test_modes_are_exclusive(self):
        with pytest.raises(SystemExit):
            cli.parse_args(["--web", "--tui"])


class TestMain:
    """Tests for running the entry point."""

    def test_answer_one_message(self, dialog_file, capsys):
        code = cli.main(["--test", "hi", "--dialog", str(dialog_file)])
        assert code == 0
        assert "Reply: hello from yaml" in capsys.readouterr().out

    def test_not_found_exit_code(self, dialog_file, capsys):
        code = cli.main(["--test", "???", "someone", "--dialog", str(dialog_file)])
        assert code == 2
        out = capsys.readouterr().out
        assert "From: someone" in out
        assert "[404]" in out

    def test_list_rules(self, dialog_file, capsys):
        assert cli.main(["--rules", "--dialog", str(dialog_file)]) == 0
        out = capsys.readouterr().out
        assert "dialog_=hi" in out
        assert "dialog_^weather" in out

    def test_bad_dialog_reports_error(self, tmp_path, dialog_file, capsys):
        assert cli.main(["--rules", "--dialog", str(tmp_path / "missing.yaml")]) == 1
        assert "Error" in capsys.readouterr().out
