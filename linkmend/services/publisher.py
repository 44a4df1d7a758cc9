from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

import httpx
from opentelemetry import trace

from linkmend.core.errors import PublishFailureError
from linkmend.core.urls import GitHubRepository
from linkmend.services.github import GitHubApiError, GitHubClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

PR_TITLE = "fix: Update broken links"
PR_BODY = """## Link Fixes

This pull request was automatically generated to fix broken links in the repository.

### What was changed?
{changes}

### How to review?
1. Check that the new links are correct and accessible
2. Verify that the changes don't break any existing functionality
"""


@dataclass(slots=True, frozen=True)
class Correction:
    file_path: str
    line_number: int
    old_content: str
    new_content: str


class Publisher(Protocol):
    async def publish(
        self,
        repository: GitHubRepository,
        branch: str | None,
        corrections: Sequence[Correction],
    ) -> str:
        """Apply corrections on a new branch and return the pull request URL."""


def apply_corrections(content: str, corrections: Sequence[Correction]) -> str:
    """Replace whole lines of ``content``; each target line must still hold ``old_content``."""
    lines = content.split("\n")
    for correction in corrections:
        index = correction.line_number - 1
        if index < 0 or index >= len(lines):
            raise PublishFailureError(f"Invalid line number {correction.line_number} in {correction.file_path}")
        current = lines[index]
        ending = "\r" if current.endswith("\r") else ""
        if current.rstrip("\r") != correction.old_content:
            raise PublishFailureError(
                f"line {correction.line_number} of {correction.file_path} changed since it was checked"
            )
        lines[index] = f"{correction.new_content}{ending}"
    return "\n".join(lines)


def commit_message(corrections: Sequence[Correction]) -> str:
    bullets = "\n".join(f"- Update link in {item.file_path}:{item.line_number}" for item in corrections)
    return f"{PR_TITLE}\n\n{bullets}\n"


class GitHubPublisher:
    """Opens a fix pull request through the GitHub REST API.

    Each touched file is rewritten with one contents-API commit on a fresh
    branch cut from the checked branch.
    """

    def __init__(self, github: GitHubClient, *, branch_prefix: str = "linkmend/fix-links") -> None:
        self.github = github
        self.branch_prefix = branch_prefix

    async def publish(
        self,
        repository: GitHubRepository,
        branch: str | None,
        corrections: Sequence[Correction],
    ) -> str:
        if not corrections:
            raise PublishFailureError("no corrections to publish")
        if not self.github.token:
            raise PublishFailureError("github token is not configured")

        with tracer.start_as_current_span("linkmend.publish") as span:
            span.set_attribute("linkmend.repo", repository.full_name)
            span.set_attribute("linkmend.corrections", len(corrections))
            try:
                return await self._publish(repository, branch, _dedupe(corrections))
            except (GitHubApiError, httpx.HTTPError, UnicodeDecodeError) as exc:
                raise PublishFailureError(str(exc)) from exc

    async def _publish(
        self,
        repository: GitHubRepository,
        branch: str | None,
        corrections: list[Correction],
    ) -> str:
        owner, name = repository.owner, repository.name
        base = branch or await self.github.get_default_branch(owner, name)
        head_sha = await self.github.get_branch_head(owner, name, base)
        feature_branch = f"{self.branch_prefix}-{datetime.now(timezone.utc):%Y%m%d%H%M%S}"
        await self.github.create_branch(owner, name, feature_branch, head_sha)
        logger.info("fix branch created repo=%s base=%s branch=%s", repository.full_name, base, feature_branch)

        by_file: dict[str, list[Correction]] = {}
        for correction in corrections:
            by_file.setdefault(correction.file_path, []).append(correction)

        for file_path, file_corrections in by_file.items():
            content, sha = await self.github.get_file(owner, name, file_path, ref=feature_branch)
            updated = apply_corrections(content, file_corrections)
            await self.github.update_file(
                owner,
                name,
                file_path,
                content=updated,
                sha=sha,
                branch=feature_branch,
                message=commit_message(file_corrections),
            )
            logger.info("fix committed path=%s lines=%s", file_path, len(file_corrections))

        changes = "\n".join(
            f"- `{item.file_path}:{item.line_number}`" for item in corrections
        )
        pr_url = await self.github.create_pull_request(
            owner,
            name,
            title=PR_TITLE,
            head=feature_branch,
            base=base,
            body=PR_BODY.format(changes=changes),
        )
        logger.info("pull request opened repo=%s url=%s", repository.full_name, pr_url)
        return pr_url


def _dedupe(corrections: Sequence[Correction]) -> list[Correction]:
    seen: dict[tuple[str, int], Correction] = {}
    for correction in corrections:
        seen.setdefault((correction.file_path, correction.line_number), correction)
    return list(seen.values())
