"""Repository file primitives scoped to a sandbox root.

These tools give agents structured access to the checked-out repository:
- read_file: Read file content with optional line range
- write_file: Safe file writing within repo bounds
- edit_file: Exact string replacement, unique unless replace_all is set
- glob_files: Match paths against a glob pattern
- search_repo: Regex search across text files

Every function returns a ToolResult; failures never raise.
"""

from __future__ import annotations

import fnmatch
import os
import re
import time
from pathlib import Path

from featureforge.schemas import ToolResult


# Maximum file size to read (1MB)
MAX_FILE_SIZE = 1024 * 1024

IGNORED_DIRS = {
    ".git", "node_modules", "__pycache__", ".venv", "venv", ".next",
    "dist", "build", ".pytest_cache", ".mypy_cache", ".turbo",
}


def _is_safe_path(repo_path: str, file_path: str) -> bool:
    """Check if file_path is safely within repo_path."""
    repo_abs = os.path.abspath(repo_path)
    file_abs = os.path.abspath(os.path.join(repo_path, file_path))
    return file_abs == repo_abs or file_abs.startswith(repo_abs + os.sep)


def _escape_error() -> ToolResult:
    return ToolResult(
        ok=False,
        error_code="PATH_ESCAPE",
        error_message="File path attempts to escape repository",
    )


def _walk_files(root: str, start: str):
    """Yield repo-relative file paths under ``start``, skipping ignored dirs."""
    for dirpath, dirnames, filenames in os.walk(start):
        dirnames[:] = sorted(d for d in dirnames if d not in IGNORED_DIRS)
        for name in sorted(filenames):
            yield os.path.relpath(os.path.join(dirpath, name), root)


async def read_file(
    repo_path: str,
    file_path: str,
    start_line: int | None = None,
    end_line: int | None = None,
) -> ToolResult:
    """Read file content with optional line range.

    Args:
        repo_path: Repository root path
        file_path: Relative path within repo
        start_line: Optional start line (1-indexed)
        end_line: Optional end line (1-indexed, inclusive)

    Returns:
        ToolResult with file content
    """
    start = time.perf_counter()

    if not _is_safe_path(repo_path, file_path):
        return _escape_error()

    full_path = os.path.join(repo_path, file_path)

    if not os.path.exists(full_path):
        return ToolResult(
            ok=False,
            error_code="FILE_NOT_FOUND",
            error_message=f"File not found: {file_path}",
        )

    if not os.path.isfile(full_path):
        return ToolResult(
            ok=False,
            error_code="NOT_A_FILE",
            error_message=f"Path is not a file: {file_path}",
        )

    file_size = os.path.getsize(full_path)
    if file_size > MAX_FILE_SIZE:
        return ToolResult(
            ok=False,
            error_code="FILE_TOO_LARGE",
            error_message=f"File too large ({file_size} bytes, max {MAX_FILE_SIZE})",
        )

    try:
        with open(full_path, "r", encoding="utf-8", errors="replace") as f:
            lines = f.readlines()
    except OSError as e:
        return ToolResult(
            ok=False,
            error_code="READ_ERROR",
            error_message=str(e),
            retryable=True,
        )

    start_idx = max(0, start_line - 1) if start_line is not None else 0
    end_idx = min(len(lines), end_line) if end_line is not None else len(lines)

    return ToolResult(
        ok=True,
        data={
            "content": "".join(lines[start_idx:end_idx]),
            "path": file_path,
            "total_lines": len(lines),
            "start_line": start_idx + 1,
            "end_line": end_idx,
        },
        latency_ms=int((time.perf_counter() - start) * 1000),
    )


async def write_file(repo_path: str, file_path: str, content: str) -> ToolResult:
    """Write a file, creating parent directories as needed."""
    if not _is_safe_path(repo_path, file_path):
        return _escape_error()

    full_path = Path(repo_path, file_path)
    existed = full_path.exists()
    try:
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")
    except OSError as e:
        return ToolResult(ok=False, error_code="WRITE_ERROR", error_message=str(e))

    return ToolResult(
        ok=True,
        data={"path": file_path, "created": not existed, "bytes": len(content.encode("utf-8"))},
    )


async def edit_file(
    repo_path: str,
    file_path: str,
    old_string: str,
    new_string: str,
    replace_all: bool = False,
) -> ToolResult:
    """Replace ``old_string`` with ``new_string`` in a file.

    The match must be unique unless ``replace_all`` is set; an ambiguous or
    missing match is reported back to the model.
    """
    if not _is_safe_path(repo_path, file_path):
        return _escape_error()

    full_path = Path(repo_path, file_path)
    if not full_path.is_file():
        return ToolResult(
            ok=False,
            error_code="FILE_NOT_FOUND",
            error_message=f"File not found: {file_path}",
        )
    if not old_string:
        return ToolResult(ok=False, error_code="EMPTY_MATCH", error_message="old_string must not be empty")

    content = full_path.read_text(encoding="utf-8", errors="replace")
    occurrences = content.count(old_string)
    if occurrences == 0:
        return ToolResult(
            ok=False,
            error_code="NO_MATCH",
            error_message=f"old_string not found in {file_path}",
        )
    if occurrences > 1 and not replace_all:
        return ToolResult(
            ok=False,
            error_code="AMBIGUOUS_MATCH",
            error_message=(
                f"old_string occurs {occurrences} times in {file_path}; "
                "add surrounding context or set replace_all"
            ),
        )

    if replace_all:
        updated = content.replace(old_string, new_string)
    else:
        updated = content.replace(old_string, new_string, 1)
    full_path.write_text(updated, encoding="utf-8")

    return ToolResult(ok=True, data={"path": file_path, "replacements": occurrences if replace_all else 1})


async def glob_files(
    repo_path: str,
    pattern: str,
    dir_path: str = ".",
    max_results: int = 200,
) -> ToolResult:
    """List files under ``dir_path`` whose repo-relative path matches ``pattern``."""
    if not _is_safe_path(repo_path, dir_path):
        return _escape_error()

    start_dir = os.path.join(repo_path, dir_path)
    if not os.path.isdir(start_dir):
        return ToolResult(
            ok=False,
            error_code="INVALID_PATH",
            error_message=f"Directory does not exist: {dir_path}",
        )

    matches = [
        path for path in _walk_files(repo_path, start_dir)
        if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(os.path.basename(path), pattern)
    ]
    return ToolResult(
        ok=True,
        data={
            "files": matches[:max_results],
            "total_matches": len(matches),
            "truncated": len(matches) > max_results,
        },
    )


async def search_repo(
    repo_path: str,
    query: str,
    dir_path: str = ".",
    file_pattern: str | None = None,
    max_results: int = 50,
) -> ToolResult:
    """Search repository files with a regular expression.

    Args:
        repo_path: Repository root path
        query: Search query (regex supported)
        dir_path: Directory to search, relative to the root
        file_pattern: Optional file pattern (e.g., "*.ts")
        max_results: Maximum number of results

    Returns:
        ToolResult with search results
    """
    start = time.perf_counter()

    if not _is_safe_path(repo_path, dir_path):
        return _escape_error()

    start_dir = os.path.join(repo_path, dir_path)
    if not os.path.isdir(start_dir):
        return ToolResult(
            ok=False,
            error_code="INVALID_PATH",
            error_message=f"Directory does not exist: {dir_path}",
        )

    try:
        regex = re.compile(query)
    except re.error as e:
        return ToolResult(
            ok=False,
            error_code="INVALID_PATTERN",
            error_message=f"Invalid regular expression: {e}",
        )

    matches = []
    for path in _walk_files(repo_path, start_dir):
        if file_pattern and not fnmatch.fnmatch(os.path.basename(path), file_pattern):
            continue
        full_path = os.path.join(repo_path, path)
        if os.path.getsize(full_path) > MAX_FILE_SIZE:
            continue
        try:
            with open(full_path, "r", encoding="utf-8") as f:
                for line_number, line in enumerate(f, 1):
                    if regex.search(line):
                        matches.append({
                            "path": path,
                            "line_number": line_number,
                            "line_content": line.strip(),
                        })
        except (UnicodeDecodeError, OSError):
            # Binary or unreadable file
            continue
        if len(matches) >= max_results:
            break

    return ToolResult(
        ok=True,
        data={
            "matches": matches[:max_results],
            "total_matches": len(matches),
            "query": query,
        },
        latency_ms=int((time.perf_counter() - start) * 1000),
    )
