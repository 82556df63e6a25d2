"""Verification boundary: run a test command against a workspace snapshot.

A snapshot is a mapping of relative POSIX paths to file contents. The
CommandSandbox writes it into a fresh temporary directory and runs the
configured command there with a hard timeout. Nothing is ever reported as
passing without the command actually exiting 0.
"""

from __future__ import annotations

import logging
import re
import subprocess
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Protocol

log = logging.getLogger("contextkit.sandbox")

_PYTEST_FAILED_RE = re.compile(r"^(?:FAILED|ERROR) (\S+)", re.MULTILINE)
_HUNK_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_LOG_LIMIT = 20_000


@dataclass(frozen=True)
class TestFailure:
    __test__ = False

    test_name: str
    log: str


@dataclass(frozen=True)
class TestReport:
    """Outcome of one sandbox run."""

    __test__ = False

    passed: bool
    failures: tuple[TestFailure, ...] = ()
    output: str = ""

    def failure_log(self) -> str:
        return "\n\n".join(f"{f.test_name}\n{f.log}" for f in self.failures) or self.output


class Sandbox(Protocol):
    def run_tests(self, snapshot: Mapping[str, str]) -> TestReport: ...


@dataclass
class CommandSandbox:
    """Run *command* (argv, no shell) in a temp dir holding the snapshot.

    Attributes:
        command: Test command, e.g. ``["pytest", "-q"]``.
        timeout_seconds: Kill the run after this many seconds.
        env: Extra environment variables; None inherits the parent's.
    """

    command: list[str] = field(default_factory=lambda: ["pytest", "-q"])
    timeout_seconds: float = 600
    env: dict[str, str] | None = None

    def run_tests(self, snapshot: Mapping[str, str]) -> TestReport:
        if not self.command:
            raise ValueError("sandbox command must not be empty")
        with tempfile.TemporaryDirectory(prefix="contextkit-sandbox-") as tmp:
            root = Path(tmp)
            materialize(snapshot, root)
            try:
                result = subprocess.run(
                    self.command,
                    shell=False,
                    cwd=str(root),
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_seconds,
                    env=self.env,
                )
            except subprocess.TimeoutExpired:
                log.warning("sandbox command timed out after %ss", self.timeout_seconds)
                return TestReport(
                    passed=False,
                    failures=(
                        TestFailure(
                            "<timeout>",
                            f"Command {' '.join(self.command)!r} timed out after "
                            f"{self.timeout_seconds} seconds",
                        ),
                    ),
                )
            except FileNotFoundError as exc:
                return TestReport(
                    passed=False,
                    failures=(TestFailure("<command>", f"Command not found: {exc}"),),
                )

        output = result.stdout
        if result.stderr:
            output += "\n[stderr]\n" + result.stderr
        output = output[-_LOG_LIMIT:]
        if result.returncode == 0:
            return TestReport(passed=True, output=output)

        names = list(dict.fromkeys(_PYTEST_FAILED_RE.findall(output)))
        failures = tuple(TestFailure(name, output) for name in names) or (
            TestFailure(f"<exit code {result.returncode}>", output),
        )
        return TestReport(passed=False, failures=failures, output=output)


def materialize(snapshot: Mapping[str, str], root: Path) -> None:
    """Write *snapshot* under *root*.

    Raises:
        ValueError: A path is absolute or escapes *root*.
    """
    for rel, content in snapshot.items():
        pure = PurePosixPath(rel)
        if pure.is_absolute() or ".." in pure.parts or not pure.parts:
            raise ValueError(f"Snapshot path must be relative and inside the workspace: {rel!r}")
        target = root.joinpath(*pure.parts)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


def apply_unified_diff(original: str, diff: str) -> str:
    """Apply the hunks of a single-file unified diff to *original*.

    File headers (``---``/``+++``/``diff --git``) are ignored. Context and
    removed lines must match exactly.

    Raises:
        ValueError: A hunk does not apply.
    """
    source = original.splitlines()
    out: list[str] = []
    cursor = 0
    lines = diff.splitlines()
    i = 0
    while i < len(lines):
        match = _HUNK_RE.match(lines[i])
        i += 1
        if not match:
            continue
        old_start = int(match.group(1))
        start = max(old_start - 1, 0) if match.group(2) != "0" else old_start
        if start < cursor:
            raise ValueError(f"Overlapping hunk at line {old_start}")
        out.extend(source[cursor:start])
        cursor = start
        while i < len(lines) and not lines[i].startswith("@@"):
            line = lines[i]
            i += 1
            if line.startswith("\\"):
                continue
            tag, body = (line[:1], line[1:]) if line else (" ", "")
            if tag == "+":
                out.append(body)
            elif tag in (" ", "-"):
                if cursor >= len(source) or source[cursor] != body:
                    raise ValueError(f"Hunk does not apply at line {cursor + 1}: {body!r}")
                if tag == " ":
                    out.append(body)
                cursor += 1
            else:
                break
    out.extend(source[cursor:])
    text = "\n".join(out)
    return text + "\n" if original.endswith("\n") or not original else text
