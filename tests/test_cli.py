"""Tests for the command-line interface."""

import tempfile

import pytest

from querykeeper.cli import main


def _run(argv):
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


def test_unopenable_store_prints_error(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        code = _run(["--db", f"{tmpdir}/missing/dir/usage.db", "usage", "user_1"])

    assert code == 1
    err = capsys.readouterr().err
    assert err.startswith("Error: Could not open record store")
    assert "Traceback" not in err


def test_dry_run_ask_then_usage(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        db = f"{tmpdir}/usage.db"
        assert _run(["--db", db, "ask", "user_1", "How do I pair my case?", "--dry-run"]) == 0
        assert "[Dry run answer to: How do I pair my case?]" in capsys.readouterr().out

        assert _run(["--db", db, "usage", "user_1"]) == 0
        out = capsys.readouterr().out
        assert "Total Queries: 1" in out


def test_admin_error_prints_error(capsys):
    with tempfile.TemporaryDirectory() as tmpdir:
        code = _run(["--db", f"{tmpdir}/usage.db", "whitelist", "remove", "user_1"])

    assert code == 1
    assert "Error:" in capsys.readouterr().err
