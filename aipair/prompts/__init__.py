"""
Prompt construction.

Collects the project's source and test files, then fills the configured
template. Templates use plain {placeholder} substitution:

  {testOutput}        build/test output of the previous cycle
  {filesContent}      source + relevant test files
  {buildFileContent}  build descriptors found at the project root
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from loguru import logger

from aipair.changes import is_build_file
from aipair.config_loader import RunConfig
from aipair.state import CycleRecord, CycleState

MAX_OUTPUT_CHARS = 12_000


@dataclass
class CodeFile:
    path: Path
    content: str


def collect_files_with_extension(dirs: Iterable[Path], extension: str) -> list[CodeFile]:
    """Recursively collect files ending in `extension` under `dirs`."""
    files: list[CodeFile] = []
    for directory in dirs:
        if not directory.is_dir():
            continue
        for path in sorted(directory.rglob(f"*{extension}")):
            if path.is_file():
                files.append(CodeFile(path=path, content=path.read_text(encoding="utf-8", errors="replace")))
    return files


def extract_class_name_from_test(test_id: str) -> str:
    """
    Turn a test id into the class that declares it.

    'org.example.AppTest.addsNumbers' → 'org.example.AppTest'
    'addsNumbers(org.example.AppTest)' → 'org.example.AppTest'
    """
    match = re.search(r"\(([^)]+)\)", test_id)
    name = match.group(1) if match else test_id

    parts = name.split(".")
    last = parts[-1]
    if len(parts) > 1 and last and last[0].islower():
        name = ".".join(parts[:-1])
    return name


def collect_test_files(config: RunConfig, previous: CycleRecord | None) -> list[CodeFile]:
    """
    Pick the test files worth showing the model.

    After a clean build with failing tests, only the failing test classes
    are sent; otherwise every test file is.
    """
    def all_tests() -> list[CodeFile]:
        return collect_files_with_extension([config.test_path], config.extension)

    if previous is None or previous.build_state is None or previous.test_results is None:
        return all_tests()
    if not previous.build_state.compiled_successfully:
        return all_tests()

    failing = previous.test_results.failed_tests | previous.test_results.errored_tests
    if not failing:
        return all_tests()

    files: list[CodeFile] = []
    seen: set[Path] = set()
    for test_id in sorted(failing):
        class_name = extract_class_name_from_test(test_id)
        path = config.test_path / (class_name.replace(".", "/") + config.extension)
        logger.debug(f"[PROMPT] Constructed test file path: {path}")
        if path in seen or not path.is_file():
            continue
        seen.add(path)
        files.append(CodeFile(path=path, content=path.read_text(encoding="utf-8", errors="replace")))

    return files or all_tests()


def render_prompt(
    config: RunConfig,
    hints: list[str],
    previous_output: str,
    files_content: str,
    build_file_content: str,
) -> str:
    """Fill the failure template when hints exist, the no-issue template otherwise."""
    if hints:
        prompt = (
            config.prompt_template
            .replace("{testOutput}", previous_output[-MAX_OUTPUT_CHARS:])
            .replace("{filesContent}", files_content)
            .replace("{buildFileContent}", build_file_content)
        )
        prompt += f"\n\nHints for improvement: {'; '.join(hints)}"
    else:
        prompt = (
            config.no_issue_prompt_template
            .replace("{filesContent}", files_content)
            .replace("{buildFileContent}", build_file_content)
        )
    return prompt


class PromptBuilder:
    """Builds the prompt for the next cycle from config + accumulated state."""

    def __init__(self, config: RunConfig):
        self.config = config

    def build(self, state: CycleState) -> str:
        previous = state.previous_cycle
        root = self.config.root_path

        code_files = collect_files_with_extension([self.config.source_path], self.config.extension)
        test_files = collect_test_files(self.config, previous)
        logger.debug(
            f"[PROMPT] {len(code_files)} code files and {len(test_files)} test files in prompt"
        )

        files_content = "\n\n".join(
            f"File: {self._relative(f.path, root)}\n\n{f.content}"
            for f in [*code_files, *test_files]
        )

        return render_prompt(
            self.config,
            hints=state.accumulated_hints,
            previous_output=(previous.run_output if previous else "") or state.last_run_output or "",
            files_content=files_content,
            build_file_content=self._build_file_content(root),
        )

    @staticmethod
    def _build_file_content(root: Path) -> str:
        if not root.is_dir():
            return ""
        parts = [
            f"File: {path.name}\n\n{path.read_text(encoding='utf-8', errors='replace')}"
            for path in sorted(root.iterdir())
            if path.is_file() and is_build_file(path.name)
        ]
        return "\n\n".join(parts)

    @staticmethod
    def _relative(path: Path, root: Path) -> str:
        try:
            return path.resolve().relative_to(root).as_posix()
        except ValueError:
            return path.as_posix()
