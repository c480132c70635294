"""
Generated code parsing and application.

Models answer with one block per file:

    File: src/main/java/org/example/App.java
    ```java
    ...complete file content...
    ```

Every written file is archived under the cycle's changes/ directory
(new content plus a .orig copy of what it replaced) so that a cycle's
diff can be inspected after the fact.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from loguru import logger

_BLOCK_SPLIT = re.compile(r"(?=^[ \t]*(?://|#)?[ \t]*\**File:)", re.MULTILINE)
_HEADER = re.compile(r"^[ \t]*(?://|#)?[ \t]*\**File:\**[ \t]*([^\n]+)", re.MULTILINE)
_FENCED = re.compile(r"```[\w+.-]*[ \t]*\n(.*?)```", re.DOTALL)


@dataclass
class FileBlock:
    path: str
    content: str


def _clean_path(raw: str) -> str:
    return raw.strip().strip("`*\"'").strip()


def extract_file_blocks(generated_code: str) -> list[FileBlock]:
    """Split a model response into (path, content) blocks."""
    blocks: list[FileBlock] = []

    for chunk in _BLOCK_SPLIT.split(generated_code):
        if not chunk.strip():
            continue

        header = _HEADER.search(chunk)
        if not header:
            continue
        path = _clean_path(header.group(1))
        if not path:
            continue

        body = chunk[header.end():]
        fenced = _FENCED.search(body)
        content = fenced.group(1) if fenced else body.strip()
        if not content.strip():
            continue

        blocks.append(FileBlock(path=path, content=content.rstrip() + "\n"))

    return blocks


def _is_within(path: Path, parent: Path) -> bool:
    try:
        path.relative_to(parent)
        return True
    except ValueError:
        return False


def apply_generated_code(
    working_dir: Path,
    generated_code: str,
    archive_dir: Path | None = None,
    protected_dirs: Iterable[Path] = (),
) -> list[str]:
    """
    Write every file block of `generated_code` into `working_dir`.

    Files under `protected_dirs` (the test sources), paths escaping the project
    and paths naming a directory are refused. A block that cannot be written
    is skipped so the remaining blocks still land. Returns one status line per block, in the same
    CREATE / MODIFY / SKIP vocabulary the console prints.
    """
    working_dir = working_dir.resolve()
    protected = [Path(p).resolve() for p in protected_dirs]
    applied: list[str] = []

    blocks = extract_file_blocks(generated_code)
    if not blocks:
        logger.warning("[APPLY] No valid code blocks found in generated code")
        return applied

    for block in blocks:
        target = (working_dir / block.path).resolve()

        if not _is_within(target, working_dir):
            logger.warning(f"[APPLY] Refusing path outside project: {block.path}")
            applied.append(f"SKIP {block.path} (outside project)")
            continue

        rel = target.relative_to(working_dir).as_posix()

        if any(_is_within(target, p) for p in protected):
            logger.warning(f"[APPLY] Attempted to modify a test file: {rel}")
            applied.append(f"SKIP {rel} (test file)")
            continue

        if target.is_dir():
            logger.warning(f"[APPLY] Target is a directory, not a file: {rel}")
            applied.append(f"SKIP {rel} (not a file)")
            continue

        existed = target.exists()

        try:
            if archive_dir is not None:
                archived = archive_dir / rel
                archived.parent.mkdir(parents=True, exist_ok=True)
                if existed:
                    Path(f"{archived}.orig").write_text(
                        target.read_text(encoding="utf-8", errors="replace"), encoding="utf-8"
                    )
                archived.write_text(block.content, encoding="utf-8")

            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(block.content, encoding="utf-8")
        except OSError as e:
            logger.error(f"[APPLY] Could not write {rel}: {e}")
            applied.append(f"SKIP {rel} (write failed)")
            continue

        applied.append(f"{'MODIFY' if existed else 'CREATE'} {rel}")

    return applied
