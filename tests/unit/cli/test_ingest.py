"""Tests for contextkit ingest."""

from __future__ import annotations

from pathlib import Path

from typer.testing import CliRunner

from contextkit.cli.ingest import expand_paths
from contextkit.cli.main import app
from contextkit.db.connection import Database
from contextkit.db.repository import Repository

runner = CliRunner()

DB = Path(".contextkit") / "contextkit.db"


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _live_paths(project_id: str = "p1") -> list[str]:
    with Database(DB) as conn:
        return Repository(conn).list_live_paths(project_id)


# ---------------------------------------------------------------------------
# Ingesting files
# ---------------------------------------------------------------------------


def test_ingest_file(cli_env, tmp_path: Path) -> None:
    _write(tmp_path / "src" / "auth.py", "def login(user):\n    return token\n")
    result = runner.invoke(app, ["ingest", "src/auth.py", "--project", "p1"])
    assert result.exit_code == 0, result.output
    assert "src/auth.py" in result.output
    assert _live_paths() == ["src/auth.py"]


def test_reingest_unchanged(cli_env, tmp_path: Path) -> None:
    _write(tmp_path / "a.py", "x = 1\n")
    runner.invoke(app, ["ingest", "a.py", "-p", "p1"])
    result = runner.invoke(app, ["ingest", "a.py", "-p", "p1"])
    assert result.exit_code == 0, result.output
    assert "unchanged" in result.output


def test_ingest_directory_recursive_skips_dot_dirs(cli_env, tmp_path: Path) -> None:
    _write(tmp_path / "pkg" / "a.py", "a = 1\n")
    _write(tmp_path / "pkg" / "sub" / "b.py", "b = 2\n")
    _write(tmp_path / "pkg" / ".git" / "config", "[core]\n")
    result = runner.invoke(app, ["ingest", "pkg", "-r", "-p", "p1"])
    assert result.exit_code == 0, result.output
    assert _live_paths() == ["pkg/a.py", "pkg/sub/b.py"]


def test_ingest_conversation_type(cli_env, tmp_path: Path) -> None:
    _write(tmp_path / "chat.txt", "user: the login token expires too early\n")
    result = runner.invoke(app, ["ingest", "chat.txt", "--type", "conversation", "-p", "p1"])
    assert result.exit_code == 0, result.output
    assert _live_paths() == ["chat.txt"]


def test_binary_file_is_metadata_only(cli_env, tmp_path: Path) -> None:
    (tmp_path / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR")
    result = runner.invoke(app, ["ingest", "logo.png", "-p", "p1"])
    assert result.exit_code == 0, result.output
    assert "binary" in result.output


# ---------------------------------------------------------------------------
# Errors and no-ops
# ---------------------------------------------------------------------------


def test_unknown_type_rejected(cli_env, tmp_path: Path) -> None:
    _write(tmp_path / "a.py", "x = 1\n")
    result = runner.invoke(app, ["ingest", "a.py", "--type", "video"])
    assert result.exit_code == 1
    assert "Unknown --type" in result.output


def test_no_files_found(cli_env, tmp_path: Path) -> None:
    (tmp_path / "empty").mkdir()
    result = runner.invoke(app, ["ingest", "empty"])
    assert result.exit_code == 0
    assert "No files found" in result.output
    assert not DB.exists()


def test_dry_run_writes_nothing(cli_env, tmp_path: Path) -> None:
    _write(tmp_path / "a.py", "x = 1\n")
    result = runner.invoke(app, ["ingest", "a.py", "--dry-run"])
    assert result.exit_code == 0, result.output
    assert "a.py" in result.output
    assert not DB.exists()


def test_missing_api_key(cli_env, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY")
    _write(tmp_path / "a.py", "x = 1\n")
    result = runner.invoke(app, ["ingest", "a.py"])
    assert result.exit_code == 1
    assert "OPENAI_API_KEY" in result.output


# ---------------------------------------------------------------------------
# expand_paths
# ---------------------------------------------------------------------------


def test_expand_paths_dedupes_and_excludes(tmp_path: Path) -> None:
    a = _write(tmp_path / "a.py", "")
    _write(tmp_path / "b.log", "")
    _write(tmp_path / "sub" / "c.py", "")
    files = expand_paths([tmp_path, a], recursive=False, exclude=["*.log"])
    assert files == [a]


def test_expand_paths_recursive(tmp_path: Path) -> None:
    _write(tmp_path / "a.py", "")
    _write(tmp_path / "sub" / "c.py", "")
    files = expand_paths([tmp_path], recursive=True, exclude=[])
    assert [f.name for f in files] == ["a.py", "c.py"]


def test_expand_paths_skips_missing(tmp_path: Path) -> None:
    assert expand_paths([tmp_path / "nope"], recursive=False, exclude=[]) == []
