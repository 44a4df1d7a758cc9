from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import httpx
from opentelemetry import trace

from linkmend.core.cancellation import CancellationToken
from linkmend.core.config import Settings
from linkmend.core.errors import (
    AlreadyInProgressError,
    CancelledByUserError,
    PublishFailureError,
    RepositoryUnavailableError,
    SessionNotFoundError,
)
from linkmend.core.telemetry import bind_session, unbind_session
from linkmend.core.urls import GitHubRepository, parse_repository_url
from linkmend.jobs.extractor import RawLink, extract_links
from linkmend.jobs.suggester import LinkSuggester
from linkmend.jobs.verifier import LinkVerification, LinkVerifier
from linkmend.schemas.sessions import LinkResultOut, SessionOut, SessionSummaryOut
from linkmend.services.github import GitHubClient
from linkmend.services.publisher import Correction, GitHubPublisher, Publisher
from linkmend.services.repository import ResultStore, build_result_store
from linkmend.services.sources import GitHubArchiveSource, RepositorySource

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ACTIVE_STATUSES = {"pending", "processing"}
_STATUS_RANK = {"pending": 0, "processing": 1, "completed": 2, "failed": 2}
CANCELLED_ERROR = "cancelled"


@dataclass(slots=True)
class Session:
    id: str
    repo_url: str
    branch: str | None
    status: str = "pending"
    results: list[LinkVerification] = field(default_factory=list)
    summary: dict[str, int] = field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None
    pr_url: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str | None]:
        return (self.repo_url, self.branch)

    def snapshot(self) -> SessionOut:
        return SessionOut(
            id=self.id,
            repo_url=self.repo_url,
            branch=self.branch,
            status=self.status,
            results=[
                LinkResultOut(
                    file_path=item.file_path,
                    line_number=item.line_number,
                    url=item.url,
                    http_status=item.http_status,
                    ok=item.ok,
                    message=item.message,
                    suggested_url=item.suggested_url,
                )
                for item in self.results
            ],
            summary=SessionSummaryOut(**self.summary),
            error=self.error,
            error_code=self.error_code,
            pr_url=self.pr_url,
            created_at=self.created_at,
            finished_at=self.finished_at,
        )


class SessionRegistry:
    """Sessions by id plus the active session per (repo_url, branch).

    Every read and write goes through one lock so admission is a single
    check-and-set and a terminal session is never written again.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self._active: dict[tuple[str, str | None], str] = {}
        self._tokens: dict[str, CancellationToken] = {}

    def admit(self, repo_url: str, branch: str | None) -> tuple[Session, CancellationToken]:
        key = (repo_url, branch)
        with self._lock:
            active_id = self._active.get(key)
            if active_id is not None:
                raise AlreadyInProgressError(repo_url, branch, active_id)
            session = Session(id=str(uuid4()), repo_url=repo_url, branch=branch)
            token = CancellationToken()
            self._sessions[session.id] = session
            self._active[key] = session.id
            self._tokens[session.id] = token
            return session, token

    def snapshot(self, session_id: str) -> SessionOut:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(f"session not found: {session_id}")
            return session.snapshot()

    def transition(self, session_id: str, status: str, **changes: Any) -> bool:
        with self._lock:
            session = self._sessions[session_id]
            if _STATUS_RANK[status] <= _STATUS_RANK[session.status]:
                return False
            for name, value in changes.items():
                setattr(session, name, value)
            session.status = status
            if status not in ACTIVE_STATUSES:
                session.finished_at = datetime.now(timezone.utc)
                self._release(session)
            return True

    def cancel(self, repo_url: str, branch: str | None) -> Session | None:
        with self._lock:
            session_id = self._active.get((repo_url, branch))
            if session_id is None:
                return None
            session = self._sessions[session_id]
            self._tokens[session_id].cancel()
            session.status = "failed"
            session.error = CANCELLED_ERROR
            session.error_code = CancelledByUserError.code
            session.finished_at = datetime.now(timezone.utc)
            self._release(session)
            return session

    def active_sessions(self) -> list[tuple[str, str | None]]:
        with self._lock:
            return list(self._active)

    def _release(self, session: Session) -> None:
        if self._active.get(session.key) == session.id:
            del self._active[session.key]
        self._tokens.pop(session.id, None)


class Orchestrator:
    """Runs crawl, verify, suggest, store and publish for one repository at a time per key."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        source: RepositorySource,
        store: ResultStore,
        publisher: Publisher | None = None,
        github: GitHubClient | None = None,
        registry: SessionRegistry | None = None,
        extensions: Sequence[str] | None = None,
        publish_enabled: bool = True,
        verifier_options: dict[str, Any] | None = None,
    ) -> None:
        self.client = client
        self.source = source
        self.store = store
        self.publisher = publisher
        self.github = github
        self.registry = registry or SessionRegistry()
        self.extensions = list(extensions) if extensions is not None else None
        self.publish_enabled = publish_enabled
        self.verifier_options = verifier_options or {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._owned_clients: list[httpx.AsyncClient] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "Orchestrator":
        link_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.http_timeout_seconds, connect=settings.http_connect_timeout_seconds),
            follow_redirects=False,
            headers={"User-Agent": settings.user_agent},
        )
        api_client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=settings.http_connect_timeout_seconds))
        github = GitHubClient(
            api_client,
            token=settings.github_token,
            base_url=settings.github_api_url,
            user_agent=settings.user_agent,
        )
        orchestrator = cls(
            client=link_client,
            source=GitHubArchiveSource(github, extensions=settings.scan_extensions),
            store=build_result_store(
                settings.database_url,
                min_pool_size=settings.database_pool_min_size,
                max_pool_size=settings.database_pool_max_size,
            ),
            publisher=GitHubPublisher(github, branch_prefix=settings.pr_branch_prefix),
            github=github,
            extensions=settings.scan_extensions,
            publish_enabled=settings.publish_enabled,
            verifier_options={
                "max_concurrency": settings.max_concurrency,
                "max_retries": settings.max_retries,
                "backoff_base_seconds": settings.retry_backoff_base_seconds,
                "backoff_max_seconds": settings.retry_backoff_max_seconds,
                "max_redirect_hops": settings.max_redirect_hops,
                "request_timeout_seconds": settings.http_timeout_seconds,
                "redirects_as_broken": settings.redirects_as_broken,
            },
        )
        orchestrator._owned_clients = [link_client, api_client]
        return orchestrator

    def create(self, repo_url: str, branch: str | None = None) -> SessionOut:
        """Admit a new session and start its pipeline in the background."""
        repository = parse_repository_url(repo_url)
        branch = branch.strip() if branch and branch.strip() else None
        loop = asyncio.get_running_loop()

        session, token = self.registry.admit(repository.url, branch)
        self.registry.transition(session.id, "processing")
        task = loop.create_task(self._run(session.id, repository, branch, token))
        self._tasks[session.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session.id, None))
        logger.info("session started id=%s repo=%s branch=%s", session.id, repository.url, branch)
        return self.registry.snapshot(session.id)

    def get(self, session_id: str) -> SessionOut:
        return self.registry.snapshot(session_id)

    def cancel(self, repo_url: str, branch: str | None = None) -> bool:
        """Cancel the active session for the key; a missing session is not an error."""
        repository = parse_repository_url(repo_url)
        branch = branch.strip() if branch and branch.strip() else None
        session = self.registry.cancel(repository.url, branch)
        if session is None:
            logger.info("cancel ignored, no active session repo=%s branch=%s", repository.url, branch)
            return False
        logger.info("session cancelled id=%s repo=%s branch=%s", session.id, repository.url, branch)
        return True

    async def wait(self, session_id: str) -> SessionOut:
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get(session_id)

    async def aclose(self) -> None:
        for repo_url, branch in self.registry.active_sessions():
            self.registry.cancel(repo_url, branch)
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        for client in self._owned_clients:
            await client.aclose()
        await self.store.close()

    async def _run(
        self,
        session_id: str,
        repository: GitHubRepository,
        branch: str | None,
        token: CancellationToken,
    ) -> None:
        log_context = bind_session(session_id)
        try:
            await self._traced_run(session_id, repository, branch, token)
        finally:
            unbind_session(log_context)

    async def _traced_run(
        self,
        session_id: str,
        repository: GitHubRepository,
        branch: str | None,
        token: CancellationToken,
    ) -> None:
        with tracer.start_as_current_span("linkmend.session") as span:
            span.set_attribute("linkmend.session_id", session_id)
            span.set_attribute("linkmend.repo", repository.full_name)
            span.set_attribute("linkmend.branch", branch or "")
            try:
                await self._execute(session_id, repository, branch, token, span)
            except CancelledByUserError:
                logger.info("session stopped after cancellation id=%s", session_id)
            except RepositoryUnavailableError as exc:
                logger.warning("repository unavailable id=%s error=%s", session_id, exc)
                self.registry.transition(session_id, "failed", error=str(exc), error_code=exc.code)
            except Exception as exc:
                logger.exception("session crashed id=%s", session_id)
                self.registry.transition(session_id, "failed", error=f"internal error: {exc}", error_code="internal_error")

    async def _execute(
        self,
        session_id: str,
        repository: GitHubRepository,
        branch: str | None,
        token: CancellationToken,
        span: trace.Span,
    ) -> None:
        files = await token.run(self.source.fetch(repository, branch))
        links = await token.run(asyncio.to_thread(_collect_links, files, self.extensions))
        logger.info("links extracted id=%s count=%s", session_id, len(links))

        verifier = LinkVerifier(self.client, cancel=token, **self.verifier_options)
        verifications = await verifier.verify_links(links)
        suggester = LinkSuggester(verifier, github=self.github)
        fixed = await suggester.apply(verifications)
        token.raise_if_cancelled()

        valid = sum(1 for item in verifications if item.ok)
        summary = {
            "total": len(verifications),
            "valid": valid,
            "broken": len(verifications) - valid,
            "fixed": fixed,
        }
        for name, value in summary.items():
            span.set_attribute(f"linkmend.links.{name}", value)

        corrections = build_corrections(links, verifications)
        partial_errors: list[tuple[str, str]] = []

        try:
            await token.run(self.store.save(repository.url, branch, corrections))
        except CancelledByUserError:
            raise
        except Exception as exc:
            logger.exception("result store failed id=%s", session_id)
            partial_errors.append(("store_failed", f"store failed: {exc}"))

        pr_url: str | None = None
        if corrections and self.publisher is not None and self.publish_enabled:
            try:
                pr_url = await token.run(self.publisher.publish(repository, branch, corrections))
            except CancelledByUserError:
                raise
            except PublishFailureError as exc:
                logger.warning("publish failed id=%s error=%s", session_id, exc)
                partial_errors.append((exc.code, f"publish failed: {exc}"))
            except Exception as exc:
                logger.exception("publisher crashed id=%s", session_id)
                partial_errors.append((PublishFailureError.code, f"publish failed: {exc}"))

        completed = self.registry.transition(
            session_id,
            "completed",
            results=verifications,
            summary=summary,
            pr_url=pr_url,
            error="; ".join(message for _, message in partial_errors) or None,
            error_code=partial_errors[0][0] if partial_errors else None,
        )
        if completed:
            logger.info(
                "session finished id=%s status=completed total=%s valid=%s broken=%s fixed=%s pr_url=%s",
                session_id,
                summary["total"],
                summary["valid"],
                summary["broken"],
                summary["fixed"],
                pr_url,
            )


def _collect_links(files: Iterable[tuple[str, str]], extensions: Sequence[str] | None) -> list[RawLink]:
    return list(extract_links(files, extensions=extensions))


def build_corrections(links: Sequence[RawLink], verifications: Sequence[LinkVerification]) -> list[Correction]:
    """One correction per fixed occurrence; the new line carries every fix made on that line."""
    fixes: dict[tuple[str, int], list[tuple[RawLink, str]]] = {}
    for link, verification in zip(links, verifications):
        if verification.ok or not verification.suggested_url:
            continue
        fixes.setdefault((link.file_path, link.line_number), []).append((link, verification.suggested_url))

    corrections: list[Correction] = []
    for line_fixes in fixes.values():
        new_content = _rewrite_line(line_fixes)
        for link, _ in line_fixes:
            corrections.append(
                Correction(
                    file_path=link.file_path,
                    line_number=link.line_number,
                    old_content=link.line_content,
                    new_content=new_content,
                )
            )
    return corrections


def _rewrite_line(line_fixes: list[tuple[RawLink, str]]) -> str:
    line = line_fixes[0][0].line_content
    # Splice right to left so earlier columns stay valid.
    for link, replacement in sorted(line_fixes, key=lambda item: item[0].column, reverse=True):
        end = link.column + len(link.url)
        if line[link.column:end] != link.url:
            line = line.replace(link.url, replacement, 1)
            continue
        line = f"{line[:link.column]}{replacement}{line[end:]}"
    return line
