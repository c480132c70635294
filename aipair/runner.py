"""
AI Pair Project Runner — build and test collaborators.

Runs the project's own toolchain in a subprocess and reports structured
results. A failing build or failing test is data, never an exception;
only an environment that cannot run the toolchain at all raises
ToolchainError.
"""

from __future__ import annotations

import os
import shlex
import subprocess
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from loguru import logger
from pydantic import BaseModel, Field

from aipair.config_loader import RunConfig
from aipair.state import BuildState, TestResults

DEFAULT_TIMEOUT = 900


class ToolchainError(Exception):
    """The build or test tool cannot be executed at all."""


class BuildOutcome(BaseModel):
    state: BuildState = Field(default_factory=BuildState)
    output: str = ""


class TestOutcome(BaseModel):
    __test__ = False
    results: TestResults = Field(default_factory=TestResults)
    output: str = ""


class Builder(Protocol):
    def build(self, config: RunConfig) -> BuildOutcome: ...


class Tester(Protocol):
    def test(self, config: RunConfig) -> TestOutcome: ...


# ---------------------------------------------------------------------------
# Command detection
# ---------------------------------------------------------------------------

def detect_commands(repo: Path, test_results: Path | None = None) -> tuple[str | None, str | None]:
    """Auto-detect (build, test) commands based on repo contents."""
    if (repo / "build.gradle.kts").exists() or (repo / "build.gradle").exists():
        gradle = "./gradlew" if (repo / "gradlew").exists() else "gradle"
        return f"{gradle} --console=plain classes testClasses", f"{gradle} --console=plain test"
    if (repo / "pom.xml").exists():
        return "mvn -q -B test-compile", "mvn -q -B test"
    if (repo / "Cargo.toml").exists():
        return "cargo build --all-targets", "cargo test"
    if (repo / "go.mod").exists():
        return "go build ./...", "go test ./..."
    if (repo / "package.json").exists():
        return "npm run build --if-present", "npm test"
    if (repo / "pyproject.toml").exists() or (repo / "setup.py").exists():
        report = (test_results or repo / "build" / "test-results") / "pytest.xml"
        return "python -m compileall -q .", f"python -m pytest -q --junitxml={report}"
    if (repo / "Makefile").exists():
        return "make", "make test"
    return None, None


# ---------------------------------------------------------------------------
# JUnit reports
# ---------------------------------------------------------------------------

def parse_junit_reports(results_dir: Path) -> tuple[set[str], set[str], set[str]]:
    """Read every JUnit XML report in `results_dir` → (passed, failed, errored) test ids."""
    passed: set[str] = set()
    failed: set[str] = set()
    errored: set[str] = set()

    if not results_dir.is_dir():
        return passed, failed, errored

    for report in sorted(results_dir.glob("*.xml")):
        try:
            root = ET.parse(report).getroot()
        except ET.ParseError as e:
            logger.error(f"[RUNNER] Error parsing XML file {report.name}: {e}")
            continue

        for case in root.iter("testcase"):
            class_name = case.get("classname", "")
            name = case.get("name", "")
            test_id = f"{class_name}.{name}" if class_name else name

            if case.find("failure") is not None:
                failed.add(test_id)
            elif case.find("error") is not None:
                errored.add(test_id)
            elif case.find("skipped") is None:
                passed.add(test_id)

    return passed, failed, errored


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

class ProjectRunner:
    """Builder + Tester backed by the project's command-line toolchain."""

    def __init__(
        self,
        build_command: str | None = None,
        test_command: str | None = None,
        timeout: int = DEFAULT_TIMEOUT,
    ):
        self.build_command = build_command
        self.test_command = test_command
        self.timeout = timeout

    @classmethod
    def for_config(cls, config: RunConfig) -> "ProjectRunner":
        detected_build, detected_test = detect_commands(config.root_path, config.test_results_path)
        return cls(
            build_command=config.build_command or detected_build,
            test_command=config.test_command or detected_test,
        )

    def build(self, config: RunConfig) -> BuildOutcome:
        if not self.build_command:
            logger.info("[RUNNER] No build command; treating project as compiled")
            return BuildOutcome(
                state=BuildState(compiled_successfully=True, last_compile_time=_now()),
            )

        returncode, output = self._execute(self.build_command, config.root_path)
        return BuildOutcome(
            state=BuildState(compiled_successfully=returncode == 0, last_compile_time=_now()),
            output=output,
        )

    def test(self, config: RunConfig) -> TestOutcome:
        if not self.test_command:
            raise ToolchainError(
                f"No test command configured or detected for {config.root_path}"
            )

        results_dir = config.test_results_path
        if results_dir.is_dir():
            for stale in results_dir.glob("*.xml"):
                stale.unlink()

        returncode, output = self._execute(self.test_command, config.root_path)
        passed, failed, errored = parse_junit_reports(results_dir)

        return TestOutcome(
            results=TestResults(
                passed=returncode == 0 and not failed and not errored,
                total_tests=len(passed) + len(failed) + len(errored),
                passed_tests=passed,
                failed_tests=failed,
                errored_tests=errored,
                last_run_time=_now(),
            ),
            output=output,
        )

    def _execute(self, command: str, cwd: Path) -> tuple[int, str]:
        argv = shlex.split(command, posix=os.name != "nt")
        logger.debug(f"[RUNNER] $ {command} (cwd={cwd})")

        try:
            result = subprocess.run(
                argv,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise ToolchainError(f"Toolchain not found: {argv[0]}") from e
        except subprocess.TimeoutExpired as e:
            output = _decode(e.stdout) + _decode(e.stderr)
            logger.warning(f"[RUNNER] Timed out after {self.timeout}s: {command}")
            return -1, output + f"\nCommand timed out after {self.timeout}s: {command}\n"

        logger.debug(f"[RUNNER] exit {result.returncode}: {command}")
        return result.returncode, (result.stdout or "") + (result.stderr or "")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _decode(data: bytes | str | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
