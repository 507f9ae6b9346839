import shutil
import sys
from pathlib import Path

import pytest

from codehelm.health import HealthChecker, HealthStatus, count_pending_tasks


def test_count_pending_tasks():
    text = "- [ ] one\n- [/] two\n- [x] three\n  - [ ] nested\n"
    assert count_pending_tasks(text) == 3
    assert count_pending_tasks("") == 0


def test_build_command_detection(tmp_path: Path):
    checker = HealthChecker(tmp_path)
    assert checker.detect_build_command() == ""

    (tmp_path / "Makefile").write_text("all:\n", encoding="utf-8")
    assert checker.detect_build_command() == "make"

    (tmp_path / "pyproject.toml").write_text("[project]\n", encoding="utf-8")
    assert checker.detect_build_command() == "python -m compileall -q ."

    assert HealthChecker(tmp_path, build_command="skip").detect_build_command() == ""
    assert HealthChecker(tmp_path, build_command="make lint").detect_build_command() == "make lint"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX tools")
@pytest.mark.asyncio
async def test_check_reports_failing_tests(tmp_path: Path):
    (tmp_path / "task.md").write_text("- [ ] a\n- [ ] b\n", encoding="utf-8")
    checker = HealthChecker(tmp_path, test_command="false", build_command="true")

    status = await checker.check()

    assert status.build_status == "passing"
    assert status.test_status == "failing"
    assert status.has_critical_issues
    assert status.pending_tasks == 2
    assert "Tests are failing" in status.warnings
    assert "Address failing tests to maintain code quality" in status.recommendations


@pytest.mark.asyncio
async def test_skipped_probes_and_missing_command(tmp_path: Path):
    checker = HealthChecker(tmp_path, test_command="skip", build_command="definitely-not-a-real-binary-xyz")

    status = await checker.check()

    assert status.test_status == "skipped"
    assert status.build_status == "failing"
    assert status.build_error
    assert status.pending_tasks == 0


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
@pytest.mark.asyncio
async def test_git_outside_repository(tmp_path: Path):
    status = HealthStatus()
    await HealthChecker(tmp_path).check_git(status)
    assert status.git_status in ("not a git repository", "clean", "uncommitted changes")


def test_report_for_healthy_project():
    status = HealthStatus(build_status="passing", test_status="skipped", git_branch="main", git_status="clean")
    HealthChecker._recommend(status)

    report = status.format_report()
    assert report.startswith("# Project Health Report")
    assert "## Build Status: passing" in report
    assert "- **Branch:** main" in report
    assert "- Project health looks good!" in report
    assert not status.has_critical_issues
