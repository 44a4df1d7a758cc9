from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import replace
from urllib.parse import quote, unquote

import httpx

from linkmend.core.urls import lowercase_path, parse_github_path_url, swap_scheme, toggle_trailing_slash
from linkmend.jobs.verifier import LinkVerification, LinkVerifier, UrlVerdict
from linkmend.services.github import GitHubApiError, GitHubClient

logger = logging.getLogger(__name__)

MAX_RENAME_HOPS = 5


class LinkSuggester:
    """Looks for a working replacement for broken URLs.

    Candidates are tried in a fixed priority order and re-verified through the
    session's verifier, so they share its cache, slots and cancellation token.
    The first candidate that verifies ``ok`` wins.
    """

    def __init__(self, verifier: LinkVerifier, *, github: GitHubClient | None = None) -> None:
        self.verifier = verifier
        self.github = github
        self.cancel = verifier.cancel
        self._suggestions: dict[str, asyncio.Task[str | None]] = {}
        self._default_branches: dict[tuple[str, str], asyncio.Task[str | None]] = {}

    async def apply(self, verifications: list[LinkVerification]) -> int:
        """Fill ``suggested_url`` on broken verifications; return how many got one."""
        broken_urls = list(dict.fromkeys(item.url for item in verifications if not item.ok))
        try:
            suggestions = await asyncio.gather(*(self.suggest(url) for url in broken_urls))
        except BaseException:
            for task in (*self._suggestions.values(), *self._default_branches.values()):
                task.cancel()
            raise

        by_url = dict(zip(broken_urls, suggestions))
        fixed = 0
        for item in verifications:
            if item.ok:
                continue
            item.suggested_url = by_url.get(item.url)
            if item.suggested_url:
                fixed += 1
        return fixed

    async def suggest(self, url: str) -> str | None:
        task = self._suggestions.get(url)
        if task is None:
            self.cancel.raise_if_cancelled()
            task = asyncio.ensure_future(self._find_replacement(url))
            self._suggestions[url] = task
        return await asyncio.shield(task)

    async def _find_replacement(self, url: str) -> str | None:
        verdict = await self.verifier.verify_url(url)
        if verdict.ok:
            return None

        tried = {url}
        async for rule, candidate in self._candidates(verdict):
            if not candidate or candidate in tried:
                continue
            tried.add(candidate)
            self.cancel.raise_if_cancelled()
            result = await self.verifier.verify_url(candidate)
            if result.ok:
                logger.info("suggestion found url=%s suggested=%s rule=%s", url, candidate, rule)
                return candidate
        logger.info("no suggestion url=%s tried=%s", url, len(tried) - 1)
        return None

    async def _candidates(self, verdict: UrlVerdict) -> AsyncIterator[tuple[str, str | None]]:
        url = verdict.url
        yield "scheme_swap", swap_scheme(url)
        yield "trailing_slash", toggle_trailing_slash(url)
        yield "lowercase_path", lowercase_path(url)
        if verdict.chain_succeeded and verdict.redirect_chain and verdict.final_url != url:
            yield "redirect_target", verdict.final_url
        yield "github_path", await self._github_path_candidate(url)

    async def _github_path_candidate(self, url: str) -> str | None:
        """Point a github.com tree/blob URL at the default branch, following renames of its path."""
        parsed = parse_github_path_url(url)
        if parsed is None or parsed.path is None or self.github is None:
            return None

        default_branch = await self._default_branch(parsed.owner, parsed.repo)
        if not default_branch:
            return None

        try:
            current_path = await self._locate_path(parsed.owner, parsed.repo, unquote(parsed.path), default_branch)
        except (GitHubApiError, httpx.HTTPError) as exc:
            logger.info("path lookup failed url=%s error=%s", url, exc)
            return None
        if current_path is None:
            return None
        return replace(parsed, path=quote(current_path)).with_branch(default_branch)

    async def _locate_path(self, owner: str, repo: str, path: str, ref: str) -> str | None:
        github = self.github
        assert github is not None
        for _ in range(MAX_RENAME_HOPS):
            exists = await self.verifier.run_bounded(lambda: github.path_exists(owner, repo, path, ref=ref))
            if exists:
                return path
            moved_to = await self._renamed_path(owner, repo, path, ref)
            if moved_to is None:
                return None
            logger.info("path renamed repo=%s/%s from=%s to=%s", owner, repo, path, moved_to)
            path = moved_to
        return None

    async def _renamed_path(self, owner: str, repo: str, path: str, ref: str) -> str | None:
        """New location of ``path`` when the newest commit touching it was a rename."""
        github = self.github
        assert github is not None
        sha = await self.verifier.run_bounded(lambda: github.get_last_commit_for_path(owner, repo, path, ref=ref))
        if sha is None:
            return None
        files = await self.verifier.run_bounded(lambda: github.get_commit_files(owner, repo, sha))
        directory = path.rstrip("/")
        for item in files:
            if item.get("status") != "renamed":
                continue
            previous, current = item.get("previous_filename") or "", item.get("filename") or ""
            if previous == path:
                return current
            # A tree URL moves with the files under it.
            if previous.startswith(f"{directory}/"):
                relative = previous[len(directory):]
                if current.endswith(relative) and len(current) > len(relative):
                    return current[: -len(relative)]
        return None

    async def _default_branch(self, owner: str, repo: str) -> str | None:
        key = (owner.lower(), repo.lower())
        task = self._default_branches.get(key)
        if task is None:
            task = asyncio.ensure_future(self._lookup_default_branch(owner, repo))
            self._default_branches[key] = task
        return await asyncio.shield(task)

    async def _lookup_default_branch(self, owner: str, repo: str) -> str | None:
        github = self.github
        assert github is not None
        try:
            return await self.verifier.run_bounded(lambda: github.get_default_branch(owner, repo))
        except (GitHubApiError, httpx.HTTPError) as exc:
            logger.info("default branch lookup failed repo=%s/%s error=%s", owner, repo, exc)
            return None
