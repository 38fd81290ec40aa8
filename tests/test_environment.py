from __future__ import annotations

from pathlib import Path

import pytest

from agent_conductor.environment import LocalExecutionEnvironment


@pytest.fixture
def workspace(tmp_path: Path) -> LocalExecutionEnvironment:
    return LocalExecutionEnvironment(tmp_path, default_timeout=5.0)


def test_execute_runs_in_workspace(workspace: LocalExecutionEnvironment, tmp_path: Path) -> None:
    result = workspace.execute("pwd && echo oops >&2 && exit 3")
    assert result.stdout.strip() == str(tmp_path.resolve())
    assert result.stderr.strip() == "oops"
    assert result.exit_code == 3
    assert not result.ok


def test_execute_timeout_reports_exit_124(workspace: LocalExecutionEnvironment) -> None:
    result = workspace.execute("exec sleep 5", timeout=0.2)
    assert result.exit_code == 124
    assert "timed out" in result.stderr


def test_files_round_trip_with_line_ranges(workspace: LocalExecutionEnvironment) -> None:
    workspace.write_file("pkg/mod.py", b"a = 1\nb = 2\nc = 3\n")
    assert workspace.read_file("pkg/mod.py", (2, 3)) == b"b = 2\nc = 3\n"

    workspace.write_file("pkg/mod.py", b"b = 20\n", line_range=(2, 2))
    assert workspace.read_file("pkg/mod.py") == b"a = 1\nb = 20\nc = 3\n"
    assert workspace.list_dir() == ["pkg/"]
    assert workspace.list_dir("pkg") == ["mod.py"]


def test_invalid_ranges_are_rejected(workspace: LocalExecutionEnvironment) -> None:
    workspace.write_file("notes.txt", b"one\n")
    with pytest.raises(ValueError, match="invalid line range"):
        workspace.read_file("notes.txt", (3, 1))
    with pytest.raises(ValueError, match="past the end"):
        workspace.write_file("notes.txt", b"x\n", line_range=(5, 5))


@pytest.mark.parametrize("path", ["../outside.txt", "/etc/passwd"])
def test_paths_cannot_escape_workspace(workspace: LocalExecutionEnvironment, path: str) -> None:
    with pytest.raises(PermissionError, match="escapes workspace"):
        workspace.read_file(path)


def test_missing_file_raises(workspace: LocalExecutionEnvironment) -> None:
    with pytest.raises(FileNotFoundError):
        workspace.read_file("absent.py")
