"""Sandboxed execution environments for feature runs.

A sandbox is a checked-out copy of the target repository addressed by an id
that survives workflow suspensions:
- SandboxProvider: create / connect / stop by id
- Sandbox: run_command plus read/write/edit/glob/grep file primitives
- LocalSandboxProvider: git clone into ``sandbox_root/<id>`` on this host
- run_allowed_command: allowlisted command execution for the coder's tool
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from urllib.parse import urlparse, urlunparse
from uuid import uuid4

from pydantic import BaseModel, Field

from featureforge.config import get_settings
from featureforge.errors import SandboxError
from featureforge.schemas import ToolResult
from featureforge.tools import repo


logger = logging.getLogger(__name__)


class CommandResult(BaseModel):
    """Captured output of one command."""
    stdout: str = ""
    stderr: str = ""
    exit_code: int


class SandboxSpec(BaseModel):
    """What to provision."""
    repo_url: str
    branch: str = "main"
    memory_mb: int = 512
    vcpus: int = 2
    region: str = "us-east-1"
    timeout_seconds: int = 300
    cwd: str = "/home/user"


class SandboxHandle(BaseModel):
    """Durable reference to a provisioned sandbox."""
    sandbox_id: str
    cwd: str = Field(..., description="Repository root inside the sandbox")


class Sandbox(ABC):
    """Operations on one running sandbox."""

    sandbox_id: str

    @abstractmethod
    async def run_command(
        self,
        cmd: str,
        args: list[str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        """Run a command in the repository root.

        Raises:
            SandboxError: the command could not be dispatched at all
        """
        ...

    @abstractmethod
    async def read_file(self, path: str, start_line: int | None = None, end_line: int | None = None) -> ToolResult:
        ...

    @abstractmethod
    async def write_file(self, path: str, content: str) -> ToolResult:
        ...

    @abstractmethod
    async def edit_file(self, path: str, old_string: str, new_string: str, replace_all: bool = False) -> ToolResult:
        ...

    @abstractmethod
    async def glob(self, pattern: str, dir_path: str = ".") -> ToolResult:
        ...

    @abstractmethod
    async def grep(self, pattern: str, dir_path: str = ".", file_pattern: str | None = None) -> ToolResult:
        ...


class SandboxProvider(ABC):
    """Creates, reconnects to and stops sandboxes."""

    @abstractmethod
    async def create(self, spec: SandboxSpec) -> SandboxHandle:
        ...

    @abstractmethod
    async def connect(self, sandbox_id: str) -> Sandbox:
        ...

    @abstractmethod
    async def stop(self, sandbox_id: str) -> None:
        ...


# =============================================================================
# Local implementation
# =============================================================================

class LocalSandbox(Sandbox):
    """Sandbox backed by a directory on this host."""

    def __init__(self, sandbox_id: str, root: str, timeout: int = 300):
        self.sandbox_id = sandbox_id
        self.root = root
        self.timeout = timeout

    async def run_command(
        self,
        cmd: str,
        args: list[str] | None = None,
        timeout: int | None = None,
    ) -> CommandResult:
        timeout = timeout or self.timeout
        argv = [cmd, *(args or [])]
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                argv,
                cwd=self.root,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError:
            # Same convention as a shell: command not found
            return CommandResult(stderr=f"{cmd}: command not found", exit_code=127)
        except subprocess.TimeoutExpired as e:
            return CommandResult(
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr) + f"\nCommand timed out after {timeout} seconds",
                exit_code=124,
            )
        except OSError as e:
            raise SandboxError(f"Failed to run {cmd} in sandbox {self.sandbox_id}: {e}") from e

        return CommandResult(stdout=result.stdout, stderr=result.stderr, exit_code=result.returncode)

    async def read_file(self, path: str, start_line: int | None = None, end_line: int | None = None) -> ToolResult:
        return await repo.read_file(self.root, path, start_line, end_line)

    async def write_file(self, path: str, content: str) -> ToolResult:
        return await repo.write_file(self.root, path, content)

    async def edit_file(self, path: str, old_string: str, new_string: str, replace_all: bool = False) -> ToolResult:
        return await repo.edit_file(self.root, path, old_string, new_string, replace_all)

    async def glob(self, pattern: str, dir_path: str = ".") -> ToolResult:
        return await repo.glob_files(self.root, pattern, dir_path)

    async def grep(self, pattern: str, dir_path: str = ".", file_pattern: str | None = None) -> ToolResult:
        return await repo.search_repo(self.root, pattern, dir_path, file_pattern)


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _authenticated_url(repo_url: str, token: str) -> str:
    """Embed a token into an https clone URL."""
    if not token or not repo_url.startswith("https://"):
        return repo_url
    parsed = urlparse(repo_url)
    return urlunparse(parsed._replace(netloc=f"x-access-token:{token}@{parsed.hostname}"))


class LocalSandboxProvider(SandboxProvider):
    """Clones the target repository into ``root_dir/<sandbox_id>``."""

    def __init__(self, root_dir: str | None = None, token: str | None = None, timeout: int | None = None):
        settings = get_settings()
        self.root_dir = root_dir or settings.sandbox_root
        self.token = token if token is not None else settings.github_token
        self.timeout = timeout or settings.sandbox_timeout_seconds

    def _path(self, sandbox_id: str) -> str:
        return os.path.join(self.root_dir, sandbox_id)

    async def create(self, spec: SandboxSpec) -> SandboxHandle:
        sandbox_id = f"sbx-{uuid4().hex[:12]}"
        path = self._path(sandbox_id)
        Path(self.root_dir).mkdir(parents=True, exist_ok=True)

        url = spec.repo_url
        if "://" not in url and not os.path.exists(url):
            url = f"https://github.com/{url}"

        logger.info(f"Cloning {spec.repo_url}@{spec.branch} into sandbox {sandbox_id}")
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                ["git", "clone", "--branch", spec.branch, _authenticated_url(url, self.token), path],
                capture_output=True,
                text=True,
                timeout=spec.timeout_seconds,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SandboxError(f"Failed to provision sandbox: {e}") from e
        if result.returncode != 0:
            raise SandboxError(f"git clone failed: {result.stderr.strip()}")

        return SandboxHandle(sandbox_id=sandbox_id, cwd=path)

    async def connect(self, sandbox_id: str) -> Sandbox:
        path = self._path(sandbox_id)
        if not os.path.isdir(path):
            raise SandboxError(f"Sandbox {sandbox_id} does not exist", retriable=False)
        return LocalSandbox(sandbox_id, path, timeout=self.timeout)

    async def stop(self, sandbox_id: str) -> None:
        logger.info(f"Stopping sandbox {sandbox_id}")
        await asyncio.to_thread(shutil.rmtree, self._path(sandbox_id), True)


# =============================================================================
# Allowlisted execution
# =============================================================================

async def run_allowed_command(
    sandbox: Sandbox,
    command: str,
    allowed: list[str] | None = None,
    timeout: int | None = None,
) -> ToolResult:
    """Run a command line in the sandbox if its program is allowlisted.

    Args:
        sandbox: Target sandbox
        command: Command to run (will be validated against allowlist)
        allowed: Permitted programs (defaults to settings)
        timeout: Command timeout in seconds

    Returns:
        ToolResult with command output
    """
    start = time.perf_counter()

    # Parse command to check against allowlist
    try:
        parts = shlex.split(command)
    except ValueError as e:
        return ToolResult(
            ok=False,
            error_code="INVALID_COMMAND",
            error_message=f"Invalid command syntax: {e}",
        )

    if not parts:
        return ToolResult(
            ok=False,
            error_code="EMPTY_COMMAND",
            error_message="Command is empty",
        )

    allowed = allowed if allowed is not None else get_settings().sandbox_allowed_commands
    if parts[0] not in allowed:
        return ToolResult(
            ok=False,
            error_code="COMMAND_NOT_ALLOWED",
            error_message=f"Command '{parts[0]}' is not in allowlist: {allowed}",
        )

    try:
        result = await sandbox.run_command(parts[0], parts[1:], timeout=timeout)
    except SandboxError as e:
        return ToolResult(
            ok=False,
            error_code="EXECUTION_ERROR",
            error_message=str(e),
            retryable=True,
        )

    return ToolResult(
        ok=result.exit_code == 0,
        data={
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exit_code": result.exit_code,
            "command": command,
        },
        error_code="COMMAND_FAILED" if result.exit_code != 0 else None,
        error_message=(result.stderr or result.stdout)[-4000:] if result.exit_code != 0 else None,
        latency_ms=int((time.perf_counter() - start) * 1000),
    )
