"""Pull-request creation helpers and the GitHub client."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel

from featureforge.config import get_settings
from featureforge.errors import SourceHostError
from featureforge.schemas import AnalysisOutput, Approach, ImplementationOutput


logger = logging.getLogger(__name__)

TITLE_PREFIX = "feat: "
TITLE_MAX_LENGTH = 72
BODY_SECTION_LIMIT = 2000
BRANCH_PREFIX = "feat/"
BRANCH_MAX_LENGTH = 50

_REPO_URL = re.compile(r"(?:github\.com[/:])?([\w.-]+)/([\w.-]+?)(?:\.git)?/?$")


class PullRequest(BaseModel):
    url: str
    number: int


# =============================================================================
# Helpers
# =============================================================================

def parse_repo_url(repo_url: str) -> tuple[str, str]:
    """Extract ``(owner, repo)`` from a GitHub URL or ``owner/repo`` string.

    Raises:
        ValueError: the locator names no owner and repository
    """
    match = _REPO_URL.search(repo_url.strip())
    if not match:
        raise ValueError(f"Invalid GitHub repository locator: {repo_url}")
    return match.group(1), match.group(2)


def generate_pr_title(prompt: str) -> str:
    """``feat:`` plus the first prompt line, at most 72 characters."""
    first_line = prompt.strip().split("\n")[0].strip()
    if not first_line:
        return f"{TITLE_PREFIX}implement changes"

    first_line = first_line[0].lower() + first_line[1:]
    available = TITLE_MAX_LENGTH - len(TITLE_PREFIX)
    if len(first_line) <= available:
        return f"{TITLE_PREFIX}{first_line}"

    truncated = first_line[: available - 3].rstrip()
    return f"{TITLE_PREFIX}{truncated}..."


def _section(label: str, content: str | None) -> str:
    if not content:
        return f"## {label}\n\n_No output captured._\n"
    if len(content) > BODY_SECTION_LIMIT:
        content = content[:BODY_SECTION_LIMIT] + "\n\n... (truncated)"
    return f"## {label}\n\n{content}\n"


def generate_pr_body(
    prompt: str,
    analysis: AnalysisOutput | None,
    approach: Approach | None,
    implementation: ImplementationOutput | None,
) -> str:
    """Build the PR description from the accumulated phase outputs."""
    sections = [
        _section("Prompt", prompt),
        _section("Analysis", analysis.to_markdown() if analysis else None),
        _section("Approach", approach.to_markdown() if approach else None),
        _section("Implementation", implementation.to_markdown() if implementation else None),
        "---\n\n_Opened automatically by FeatureForge._",
    ]
    return "\n".join(sections)


def slugify_branch(prompt: str, suffix: str = "") -> str:
    """Branch name like ``feat/add-dark-mode-toggle``.

    ``suffix`` (e.g. a short run id) is appended after the slug and counts
    toward the length limit.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", prompt.lower()).strip("-") or "changes"
    tail = f"-{suffix}" if suffix else ""
    available = BRANCH_MAX_LENGTH - len(BRANCH_PREFIX) - len(tail)
    slug = slug[:available].rstrip("-")
    return f"{BRANCH_PREFIX}{slug}{tail}"


# =============================================================================
# Source hosting
# =============================================================================

class SourceHost(ABC):
    """Opens pull requests on the hosting service."""

    @abstractmethod
    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        head: str,
        base: str,
        title: str,
        body: str,
    ) -> PullRequest:
        ...


class GitHubClient(SourceHost):
    """GitHub REST client for pull requests."""

    def __init__(
        self,
        token: str | None = None,
        api_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.token = token if token is not None else settings.github_token
        self._client = httpx.AsyncClient(
            base_url=api_url or settings.github_api_url,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {self.token}",
                "X-GitHub-Api-Version": "2022-11-28",
            },
            timeout=30.0,
            transport=transport,
        )

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        head: str,
        base: str,
        title: str,
        body: str,
    ) -> PullRequest:
        """Open a PR from ``head`` into ``base``.

        The head branch must already be pushed.

        Raises:
            SourceHostError: the API could not be reached or rejected the request
        """
        if not self.token:
            raise SourceHostError("GitHub token is not configured", status_code=401)

        logger.info(f"Creating pull request {owner}/{repo} {head} -> {base}")
        payload: dict[str, Any] = {"title": title, "body": body, "head": head, "base": base}
        try:
            response = await self._client.post(f"/repos/{owner}/{repo}/pulls", json=payload)
        except httpx.HTTPError as e:
            raise SourceHostError(f"GitHub request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"GitHub rejected pull request ({response.status_code}): {response.text[:500]}")
            raise SourceHostError(
                f"GitHub returned {response.status_code} creating pull request",
                status_code=response.status_code,
            )

        data = response.json()
        return PullRequest(url=data["html_url"], number=data["number"])

    async def close(self) -> None:
        await self._client.aclose()
