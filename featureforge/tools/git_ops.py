"""Git operations run inside a sandbox.

Provides the git steps the pipeline needs:
- reset_branch: (re)create the work branch from the base and clean the tree
- changed_files: paths touched in the working tree
- diff_against_base: added/modified/deleted files relative to the base
- commit_all / push_branch: publish the work for the pull request
"""

from __future__ import annotations

import logging

from featureforge.errors import SandboxError
from featureforge.schemas import ChangeType, FileChange
from featureforge.tools.sandbox import CommandResult, Sandbox


logger = logging.getLogger(__name__)

COMMIT_AUTHOR = ("FeatureForge", "featureforge@users.noreply.github.com")


async def _git(sandbox: Sandbox, *args: str, check: bool = True) -> CommandResult:
    result = await sandbox.run_command("git", list(args))
    if check and result.exit_code != 0:
        raise SandboxError(f"git {' '.join(args)} failed: {(result.stderr or result.stdout).strip()}")
    return result


async def reset_branch(sandbox: Sandbox, branch: str, base: str) -> None:
    """Point ``branch`` at ``base`` and discard all working changes."""
    await _git(sandbox, "checkout", "-B", branch, base)
    await _git(sandbox, "reset", "--hard", base)
    await _git(sandbox, "clean", "-fd")


async def changed_files(sandbox: Sandbox) -> list[str]:
    """List paths with uncommitted changes, untracked files included."""
    result = await _git(sandbox, "status", "--porcelain")
    paths = []
    for line in result.stdout.splitlines():
        if not line.strip():
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip('"'))
    return paths


def parse_name_status(output: str) -> list[FileChange]:
    """Parse ``git diff --name-status`` output.

    Renames become a deletion plus an addition; copies become an addition.
    """
    changes: list[FileChange] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        code = parts[0][:1]
        if code == "A":
            changes.append(FileChange(path=parts[1], change_type=ChangeType.ADDED))
        elif code == "D":
            changes.append(FileChange(path=parts[1], change_type=ChangeType.DELETED))
        elif code == "R" and len(parts) >= 3:
            changes.append(FileChange(path=parts[1], change_type=ChangeType.DELETED))
            changes.append(FileChange(path=parts[2], change_type=ChangeType.ADDED))
        elif code == "C" and len(parts) >= 3:
            changes.append(FileChange(path=parts[2], change_type=ChangeType.ADDED))
        else:
            changes.append(FileChange(path=parts[-1], change_type=ChangeType.MODIFIED))
    return changes


async def diff_against_base(sandbox: Sandbox, base: str) -> list[FileChange]:
    """File-level diff of the working tree (untracked files included) against ``base``."""
    await _git(sandbox, "add", "-A")
    result = await _git(sandbox, "diff", "--cached", "--name-status", base)
    return parse_name_status(result.stdout)


async def commit_all(sandbox: Sandbox, message: str) -> str:
    """Commit every change and return the new HEAD sha."""
    name, email = COMMIT_AUTHOR
    await _git(sandbox, "add", "-A")
    result = await _git(
        sandbox,
        "-c", f"user.name={name}",
        "-c", f"user.email={email}",
        "commit", "-m", message,
        check=False,
    )
    if result.exit_code != 0 and "nothing to commit" not in result.stdout:
        raise SandboxError(f"git commit failed: {(result.stderr or result.stdout).strip()}")
    head = await _git(sandbox, "rev-parse", "HEAD")
    return head.stdout.strip()


async def push_branch(sandbox: Sandbox, branch: str) -> None:
    logger.info(f"Pushing {branch} from sandbox {sandbox.sandbox_id}")
    await _git(sandbox, "push", "--force-with-lease", "-u", "origin", branch)
