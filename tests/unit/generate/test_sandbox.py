"""Tests for CommandSandbox, materialize and apply_unified_diff."""

from __future__ import annotations

import subprocess
import sys
from unittest.mock import patch

import pytest

from contextkit.generate.sandbox import (
    CommandSandbox,
    TestFailure,
    TestReport,
    apply_unified_diff,
    materialize,
)


def _completed(returncode: int, stdout: str = "", stderr: str = ""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


# ------------------------------------------------------------------
# CommandSandbox
# ------------------------------------------------------------------


def test_exit_zero_passes():
    with patch("subprocess.run", return_value=_completed(0, "3 passed")) as mock_run:
        report = CommandSandbox(["pytest", "-q"]).run_tests({"a.py": "x = 1\n"})
    assert report.passed
    assert "3 passed" in report.output
    kwargs = mock_run.call_args.kwargs
    assert kwargs["shell"] is False
    assert kwargs["timeout"] == 600


def test_failed_tests_are_named():
    stdout = (
        "FAILED tests/test_auth.py::test_login - AssertionError\n"
        "ERROR tests/test_db.py::test_conn\n"
        "1 failed, 1 error"
    )
    with patch("subprocess.run", return_value=_completed(1, stdout, "warning")):
        report = CommandSandbox().run_tests({})
    assert not report.passed
    assert [f.test_name for f in report.failures] == [
        "tests/test_auth.py::test_login",
        "tests/test_db.py::test_conn",
    ]
    assert "[stderr]" in report.output


def test_unparsed_failure_uses_exit_code():
    with patch("subprocess.run", return_value=_completed(2, "boom")):
        report = CommandSandbox(["make", "test"]).run_tests({})
    assert report.failures[0].test_name == "<exit code 2>"


def test_timeout_is_a_failure():
    with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["pytest"], 5)):
        report = CommandSandbox(timeout_seconds=5).run_tests({})
    assert not report.passed
    assert report.failures[0].test_name == "<timeout>"


def test_missing_command_is_a_failure():
    report = CommandSandbox(["contextkit-no-such-binary-xyz"]).run_tests({})
    assert not report.passed
    assert report.failures[0].test_name == "<command>"


def test_empty_command_rejected():
    with pytest.raises(ValueError):
        CommandSandbox([]).run_tests({})


def test_runs_in_snapshot_directory():
    script = "import pathlib, sys; sys.exit(0 if pathlib.Path('pkg/mod.py').read_text() == 'v = 2\\n' else 1)"
    report = CommandSandbox([sys.executable, "-c", script], timeout_seconds=30).run_tests(
        {"pkg/mod.py": "v = 2\n"}
    )
    assert report.passed


def test_failure_log_prefers_named_failures():
    report = TestReport(passed=False, failures=(TestFailure("t1", "log one"),), output="raw")
    assert report.failure_log() == "t1\nlog one"
    assert TestReport(passed=False, output="raw").failure_log() == "raw"


# ------------------------------------------------------------------
# materialize
# ------------------------------------------------------------------


def test_materialize_writes_nested_files(tmp_path):
    materialize({"a/b/c.py": "x\n", "top.txt": "t"}, tmp_path)
    assert (tmp_path / "a" / "b" / "c.py").read_text() == "x\n"
    assert (tmp_path / "top.txt").read_text() == "t"


@pytest.mark.parametrize("path", ["/etc/passwd", "../escape.py", "a/../../b.py", ""])
def test_materialize_rejects_unsafe_paths(tmp_path, path):
    with pytest.raises(ValueError):
        materialize({path: "x"}, tmp_path)


# ------------------------------------------------------------------
# apply_unified_diff
# ------------------------------------------------------------------


def test_apply_diff_with_headers():
    original = "def login(user):\n    return token\n"
    diff = (
        "--- a/src/auth.py\n"
        "+++ b/src/auth.py\n"
        "@@ -1,2 +1,3 @@\n"
        " def login(user):\n"
        "-    return token\n"
        "+    token = refresh(user)\n"
        "+    return token\n"
    )
    assert apply_unified_diff(original, diff) == (
        "def login(user):\n    token = refresh(user)\n    return token\n"
    )


def test_apply_diff_multiple_hunks():
    original = "\n".join(f"l{i}" for i in range(1, 11)) + "\n"
    diff = "@@ -2,1 +2,1 @@\n-l2\n+L2\n@@ -9,1 +9,1 @@\n-l9\n+L9\n"
    result = apply_unified_diff(original, diff).splitlines()
    assert result[1] == "L2"
    assert result[8] == "L9"
    assert len(result) == 10


def test_apply_diff_to_new_file():
    diff = "--- /dev/null\n+++ b/new.py\n@@ -0,0 +1,2 @@\n+a = 1\n+b = 2\n"
    assert apply_unified_diff("", diff) == "a = 1\nb = 2\n"


def test_apply_diff_context_mismatch():
    with pytest.raises(ValueError, match="does not apply"):
        apply_unified_diff("a\nb\n", "@@ -1,1 +1,1 @@\n-x\n+y\n")


def test_apply_diff_overlapping_hunks():
    diff = "@@ -3,1 +3,1 @@\n-c\n+C\n@@ -1,1 +1,1 @@\n-a\n+A\n"
    with pytest.raises(ValueError, match="Overlapping"):
        apply_unified_diff("a\nb\nc\n", diff)
