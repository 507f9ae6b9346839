import sys
from pathlib import Path

import pytest

from codehelm.config import Config, ToolsConfig
from codehelm.tools import ReadFileTool, ShellTool, WriteFileTool, create_default_registry


@pytest.mark.asyncio
async def test_read_file_with_offset_and_limit(tmp_path: Path):
    (tmp_path / "notes.txt").write_text("one\ntwo\nthree\nfour\n", encoding="utf-8")
    tool = ReadFileTool(tmp_path)

    full = await tool.execute(path="notes.txt")
    window = await tool.execute(path="notes.txt", offset=2, limit=2)

    assert full.output == "one\ntwo\nthree\nfour\n"
    assert window.output == "two\nthree"


@pytest.mark.asyncio
async def test_read_file_refuses_paths_outside_project(tmp_path: Path):
    project = tmp_path / "project"
    project.mkdir()
    (tmp_path / "secret.txt").write_text("s", encoding="utf-8")

    result = await ReadFileTool(project).execute(path="../secret.txt")

    assert not result.success
    assert "escapes project root" in result.error


@pytest.mark.asyncio
async def test_read_file_missing_and_oversized(tmp_path: Path):
    (tmp_path / "big.txt").write_text("x" * 50, encoding="utf-8")
    tool = ReadFileTool(tmp_path, max_bytes=10)

    missing = await tool.execute(path="nope.txt")
    big = await tool.execute(path="big.txt")

    assert missing.error == "no such file: nope.txt"
    assert big.error == "file too large: 50 bytes (max 10)"


@pytest.mark.asyncio
async def test_write_file_creates_parents_and_appends(tmp_path: Path):
    tool = WriteFileTool(tmp_path)

    first = await tool.execute(path="out/a.txt", content="hello")
    second = await tool.execute(path="out/a.txt", content=" world", append=True)

    assert first.output == "Wrote 5 chars to out/a.txt"
    assert second.output == "Appended 6 chars to out/a.txt"
    assert (tmp_path / "out" / "a.txt").read_text(encoding="utf-8") == "hello world"


@pytest.mark.asyncio
async def test_write_file_outside_project_fails(tmp_path: Path):
    result = await WriteFileTool(tmp_path).execute(path="/tmp/../../etc/codehelm-test", content="x")
    assert not result.success
    assert "escapes project root" in result.error


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell")
@pytest.mark.asyncio
async def test_shell_runs_in_project_root(tmp_path: Path):
    (tmp_path / "marker.txt").write_text("m", encoding="utf-8")
    tool = ShellTool(tmp_path, timeout=5)

    ok = await tool.execute(command="ls")
    failed = await tool.execute(command="echo oops >&2; exit 3")

    assert ok.success
    assert "marker.txt" in ok.output
    assert not failed.success
    assert failed.error == "exit code 3: oops"
    assert "[stderr] oops" in failed.output


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell")
@pytest.mark.asyncio
async def test_shell_command_timeout(tmp_path: Path):
    tool = ShellTool(tmp_path, timeout=1)
    result = await tool.execute(command="sleep 5")

    assert not result.success
    assert result.error == "command timed out after 1s"


def test_default_registry_follows_enabled_list(tmp_path: Path):
    config = Config(tools=ToolsConfig(enabled=["read_file", "shell", "teleport"]))
    registry = create_default_registry(config, tmp_path)

    assert [tool.name for tool in registry.list_tools()] == ["read_file", "shell"]
