from __future__ import annotations

import asyncio
import io
import logging
import tarfile
from collections.abc import Iterable, Iterator
from pathlib import PurePosixPath
from typing import Protocol

import httpx

from linkmend.core.errors import RepositoryUnavailableError
from linkmend.core.urls import GitHubRepository
from linkmend.services.github import GitHubApiError, GitHubClient

logger = logging.getLogger(__name__)


class RepositorySource(Protocol):
    async def fetch(self, repository: GitHubRepository, branch: str | None) -> Iterable[tuple[str, str]]:
        """Return ``(file_path, text)`` pairs for a snapshot of ``branch``."""


class InMemorySource:
    """Fixed file listings keyed by repository URL, for local runs and tests."""

    def __init__(self, files: dict[str, list[tuple[str, str]]] | None = None) -> None:
        self.files = files or {}

    async def fetch(self, repository: GitHubRepository, branch: str | None) -> Iterable[tuple[str, str]]:
        try:
            return list(self.files[repository.url])
        except KeyError as exc:
            raise RepositoryUnavailableError(f"repository not found: {repository.url}") from exc


class GitHubArchiveSource:
    """Fetches a branch tarball through the GitHub API and reads it in memory."""

    def __init__(self, github: GitHubClient, *, extensions: Iterable[str] | None = None) -> None:
        self.github = github
        self.extensions = {ext.lower() for ext in extensions} if extensions is not None else None

    async def fetch(self, repository: GitHubRepository, branch: str | None) -> Iterable[tuple[str, str]]:
        try:
            archive = await self.github.download_tarball(repository.owner, repository.name, branch)
        except (GitHubApiError, httpx.HTTPError) as exc:
            raise RepositoryUnavailableError(
                f"failed to fetch {repository.url}@{branch or 'default'}: {exc}"
            ) from exc
        logger.info("repository archive fetched repo=%s branch=%s bytes=%s", repository.full_name, branch, len(archive))
        return await asyncio.to_thread(_read_archive, archive, self.extensions)


def _read_archive(archive: bytes, extensions: set[str] | None) -> list[tuple[str, str]]:
    return list(_iter_archive(archive, extensions))


def _iter_archive(archive: bytes, extensions: set[str] | None) -> Iterator[tuple[str, str]]:
    try:
        bundle = tarfile.open(fileobj=io.BytesIO(archive), mode="r:*")
    except tarfile.TarError as exc:
        raise RepositoryUnavailableError(f"unreadable repository archive: {exc}") from exc

    with bundle:
        for member in bundle:
            if not member.isfile():
                continue
            # GitHub prefixes every entry with "{owner}-{repo}-{sha}/".
            parts = PurePosixPath(member.name).parts[1:]
            if not parts:
                continue
            file_path = "/".join(parts)
            if extensions is not None and PurePosixPath(file_path).suffix.lower() not in extensions:
                continue
            handle = bundle.extractfile(member)
            if handle is None:
                continue
            try:
                text = handle.read().decode("utf-8")
            except UnicodeDecodeError:
                logger.debug("skipping non-utf8 file path=%s", file_path)
                continue
            yield file_path, text
