from __future__ import annotations

import asyncio
import threading
from collections.abc import Sequence
from typing import Any

import httpx
import pytest

from linkmend.core.errors import (
    AlreadyInProgressError,
    InvalidRepositoryUrlError,
    PublishFailureError,
    SessionNotFoundError,
)
from linkmend.core.urls import GitHubRepository
from linkmend.jobs.extractor import RawLink
from linkmend.jobs.verifier import LinkVerification
from linkmend.services.orchestrator import Orchestrator, build_corrections
from linkmend.services.publisher import Correction
from linkmend.services.repository import InMemoryResultStore
from linkmend.services.sources import InMemorySource

REPO_URL = "https://github.com/owner/repo"


class RecordingPublisher:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[tuple[str, str | None, list[Correction]]] = []

    async def publish(self, repository: GitHubRepository, branch: str | None, corrections: Sequence[Correction]) -> str:
        self.calls.append((repository.url, branch, list(corrections)))
        if self.error is not None:
            raise self.error
        return "https://github.com/owner/repo/pull/7"


def _status_handler(ok_urls: set[str]) -> Any:
    def handler(request: httpx.Request) -> httpx.Response:
        status_code = 200 if str(request.url) in ok_urls else 404
        return httpx.Response(status_code=status_code, request=request)

    return handler


def _orchestrator(
    handler: Any,
    files: list[tuple[str, str]],
    *,
    store: InMemoryResultStore | None = None,
    publisher: RecordingPublisher | None = None,
    **verifier_options: Any,
) -> Orchestrator:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False)
    return Orchestrator(
        client=client,
        source=InMemorySource({REPO_URL: files}),
        store=store or InMemoryResultStore(),
        publisher=publisher,
        verifier_options={"backoff_base_seconds": 0.0, **verifier_options},
    )


FIXABLE_FILES = [
    ("README.md", "Docs: http://example.com/a\nGuide: https://example.com/Docs\nHome: https://example.com/home\n"),
    ("site/index.html", '<a href="https://gone.example.com/x">x</a>\n'),
]
FIXABLE_OK_URLS = {"https://example.com/a", "https://example.com/docs", "https://example.com/home"}


def test_session_completes_with_results_in_extraction_order() -> None:
    delays = {"/u1": 0.05, "/u2": 0.02, "/u3": 0.0}

    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(delays.get(request.url.path, 0.0))
        return httpx.Response(status_code=200, request=request)

    files = [
        ("f1.md", "https://example.com/u1\nhttps://example.com/u2\n"),
        ("f2.md", "https://example.com/u3\n"),
    ]

    async def run() -> Any:
        orchestrator = _orchestrator(handler, files)
        created = orchestrator.create(REPO_URL, "main")
        assert created.status == "processing"
        return await orchestrator.wait(created.id)

    session = asyncio.run(run())

    assert session.status == "completed"
    assert [(item.file_path, item.line_number, item.url) for item in session.results] == [
        ("f1.md", 1, "https://example.com/u1"),
        ("f1.md", 2, "https://example.com/u2"),
        ("f2.md", 1, "https://example.com/u3"),
    ]
    assert session.summary.total == 3
    assert session.summary.valid == 3
    assert session.error is None
    assert session.finished_at is not None


def test_second_create_for_active_key_is_rejected_until_first_finishes() -> None:
    async def run() -> tuple[str, str]:
        gate = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await gate.wait()
            return httpx.Response(status_code=200, request=request)

        orchestrator = _orchestrator(handler, [("a.md", "https://example.com/page\n")])
        first = orchestrator.create(REPO_URL, "main")
        await asyncio.sleep(0)

        with pytest.raises(AlreadyInProgressError):
            orchestrator.create(REPO_URL, "main")
        other_branch = orchestrator.create(REPO_URL, "dev")
        assert orchestrator.get(first.id).status == "processing"

        gate.set()
        finished = await orchestrator.wait(first.id)
        await orchestrator.wait(other_branch.id)
        again = orchestrator.create(REPO_URL, "main")
        rerun = await orchestrator.wait(again.id)
        return finished.status, rerun.status

    assert asyncio.run(run()) == ("completed", "completed")


def test_cancel_mid_run_stops_requests_and_fails_session() -> None:
    requests_seen = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal requests_seen
        requests_seen += 1
        await asyncio.Event().wait()
        return httpx.Response(status_code=200, request=request)

    files = [("links.md", "\n".join(f"https://example.com/page-{index}" for index in range(100)))]

    async def run() -> tuple[Any, Any, int, int]:
        orchestrator = _orchestrator(handler, files, max_concurrency=8)
        created = orchestrator.create(REPO_URL, "main")
        for _ in range(100):
            if requests_seen >= 8:
                break
            await asyncio.sleep(0.01)

        assert orchestrator.cancel(REPO_URL, "main") is True
        seen_at_cancel = requests_seen
        immediately = orchestrator.get(created.id)
        final = await asyncio.wait_for(orchestrator.wait(created.id), timeout=2.0)
        await asyncio.sleep(0.05)
        return immediately, final, seen_at_cancel, requests_seen

    immediately, final, seen_at_cancel, seen_after = asyncio.run(run())

    assert immediately.status == "failed"
    assert immediately.error == "cancelled"
    assert final.status == "failed"
    assert final.error == "cancelled"
    assert final.error_code == "cancelled"
    assert final.results == []
    assert seen_at_cancel == 8
    assert seen_after == seen_at_cancel


def test_cancel_without_active_session_is_a_noop() -> None:
    async def run() -> bool:
        orchestrator = _orchestrator(_status_handler(set()), [])
        return orchestrator.cancel(REPO_URL, "main")

    assert asyncio.run(run()) is False


def test_cancel_frees_the_key_for_a_new_session() -> None:
    async def run() -> str:
        gate = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            await gate.wait()
            return httpx.Response(status_code=200, request=request)

        orchestrator = _orchestrator(handler, [("a.md", "https://example.com/page\n")])
        first = orchestrator.create(REPO_URL)
        orchestrator.cancel(REPO_URL)
        second = orchestrator.create(REPO_URL)
        gate.set()
        await orchestrator.wait(first.id)
        return (await orchestrator.wait(second.id)).status

    assert asyncio.run(run()) == "completed"


def test_fixed_links_are_persisted_against_one_repository_row() -> None:
    store = InMemoryResultStore()

    async def run() -> Any:
        orchestrator = _orchestrator(_status_handler(FIXABLE_OK_URLS), FIXABLE_FILES, store=store)
        first = await orchestrator.wait(orchestrator.create(REPO_URL, "main").id)
        assert len(store.check_results) == 2
        second = await orchestrator.wait(orchestrator.create(REPO_URL, "main").id)
        return first, second

    first, second = asyncio.run(run())

    assert first.status == second.status == "completed"
    assert first.summary.broken == 3
    assert first.summary.fixed == 2
    assert len(store.repositories) == 1
    assert len(store.check_results) == 4
    repo_id = next(iter(store.repositories))
    assert {row.repo_id for row in store.check_results} == {repo_id}
    assert [(row.file_path, row.line_number, row.new_content) for row in store.check_results[:2]] == [
        ("README.md", 1, "Docs: https://example.com/a"),
        ("README.md", 2, "Guide: https://example.com/docs"),
    ]
    broken = [item for item in first.results if not item.ok]
    assert [item.suggested_url for item in broken] == ["https://example.com/a", "https://example.com/docs", None]


def test_publish_success_attaches_pr_url() -> None:
    publisher = RecordingPublisher()

    async def run() -> Any:
        orchestrator = _orchestrator(_status_handler(FIXABLE_OK_URLS), FIXABLE_FILES, publisher=publisher)
        return await orchestrator.wait(orchestrator.create(REPO_URL, "main").id)

    session = asyncio.run(run())

    assert session.status == "completed"
    assert session.pr_url == "https://github.com/owner/repo/pull/7"
    assert session.error is None
    repo_url, branch, corrections = publisher.calls[0]
    assert (repo_url, branch) == (REPO_URL, "main")
    assert [(item.file_path, item.line_number) for item in corrections] == [("README.md", 1), ("README.md", 2)]


def test_publish_failure_keeps_session_completed() -> None:
    publisher = RecordingPublisher(error=PublishFailureError("push rejected"))

    async def run() -> Any:
        orchestrator = _orchestrator(_status_handler(FIXABLE_OK_URLS), FIXABLE_FILES, publisher=publisher)
        return await orchestrator.wait(orchestrator.create(REPO_URL, "main").id)

    session = asyncio.run(run())

    assert session.status == "completed"
    assert session.pr_url is None
    assert len(session.results) == 4
    assert session.error_code == "publish_failed"
    assert session.error is not None
    assert session.error.startswith("publish failed")
    assert "push rejected" in session.error


def test_publisher_is_skipped_when_nothing_was_fixed() -> None:
    publisher = RecordingPublisher()

    async def run() -> Any:
        orchestrator = _orchestrator(_status_handler(set()), [("a.md", "https://gone.example.com/x\n")], publisher=publisher)
        return await orchestrator.wait(orchestrator.create(REPO_URL, "main").id)

    session = asyncio.run(run())

    assert session.status == "completed"
    assert session.summary.fixed == 0
    assert publisher.calls == []


def test_unavailable_repository_fails_session() -> None:
    async def run() -> Any:
        orchestrator = Orchestrator(
            client=httpx.AsyncClient(transport=httpx.MockTransport(_status_handler(set()))),
            source=InMemorySource({}),
            store=InMemoryResultStore(),
        )
        session = await orchestrator.wait(orchestrator.create(REPO_URL, "main").id)
        retry = orchestrator.create(REPO_URL, "main")
        await orchestrator.wait(retry.id)
        return session

    session = asyncio.run(run())

    assert session.status == "failed"
    assert session.error_code == "repository_unavailable"
    assert "repository not found" in (session.error or "")


def test_invalid_repository_url_and_unknown_session_are_rejected() -> None:
    async def run() -> Orchestrator:
        orchestrator = _orchestrator(_status_handler(set()), [])
        with pytest.raises(InvalidRepositoryUrlError):
            orchestrator.create("https://example.com/owner/repo")
        return orchestrator

    orchestrator = asyncio.run(run())

    assert orchestrator.registry.active_sessions() == []
    with pytest.raises(SessionNotFoundError):
        orchestrator.get("missing")


def test_build_corrections_merges_fixes_on_the_same_line() -> None:
    line = "see http://example.com/a and http://example.com/a/b"
    links = [
        RawLink("a.md", 3, line, "http://example.com/a", column=4),
        RawLink("a.md", 3, line, "http://example.com/a/b", column=29),
        RawLink("a.md", 4, "ok https://example.com/ok", "https://example.com/ok", column=3),
    ]
    verifications = [
        LinkVerification("a.md", 3, "http://example.com/a", 404, False, "HTTP status code: 404", "https://example.com/a"),
        LinkVerification("a.md", 3, "http://example.com/a/b", 404, False, "HTTP status code: 404", "https://example.com/b"),
        LinkVerification("a.md", 4, "https://example.com/ok", 200, True, "valid"),
    ]

    corrections = build_corrections(links, verifications)

    assert corrections == [
        Correction("a.md", 3, line, "see https://example.com/a and https://example.com/b"),
        Correction("a.md", 3, line, "see https://example.com/a and https://example.com/b"),
    ]


def _wait_for_requests(counter: Any, expected: int) -> Any:
    async def wait() -> None:
        for _ in range(200):
            if counter() >= expected:
                return
            await asyncio.sleep(0.01)

    return wait()


def test_cancel_during_retry_backoff_stops_further_attempts() -> None:
    requests_seen = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal requests_seen
        requests_seen += 1
        raise httpx.ConnectError("connection refused", request=request)

    files = [("links.md", "\n".join(f"https://example.com/flaky-{index}" for index in range(3)))]

    async def run() -> tuple[Any, int, int]:
        orchestrator = _orchestrator(handler, files, backoff_base_seconds=30.0, backoff_max_seconds=30.0)
        created = orchestrator.create(REPO_URL, "main")
        await _wait_for_requests(lambda: requests_seen, 3)

        assert orchestrator.cancel(REPO_URL, "main") is True
        seen_at_cancel = requests_seen
        final = await asyncio.wait_for(orchestrator.wait(created.id), timeout=2.0)
        await asyncio.sleep(0.05)
        return final, seen_at_cancel, requests_seen

    final, seen_at_cancel, seen_after = asyncio.run(run())

    assert final.status == "failed"
    assert final.error == "cancelled"
    assert seen_at_cancel == 3
    assert seen_after == seen_at_cancel


def test_cancel_while_suggestions_are_checked_stops_further_requests() -> None:
    requested: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if request.url.scheme == "https":
            await asyncio.Event().wait()
        return httpx.Response(status_code=404, request=request)

    files = [("links.md", "\n".join(f"http://example.com/old-{index}" for index in range(4)))]

    async def run() -> tuple[Any, int, int]:
        orchestrator = _orchestrator(handler, files, max_concurrency=2)
        created = orchestrator.create(REPO_URL, "main")
        await _wait_for_requests(lambda: sum(url.startswith("https://") for url in requested), 1)

        assert orchestrator.cancel(REPO_URL, "main") is True
        seen_at_cancel = len(requested)
        final = await asyncio.wait_for(orchestrator.wait(created.id), timeout=2.0)
        await asyncio.sleep(0.05)
        return final, seen_at_cancel, len(requested)

    final, seen_at_cancel, seen_after = asyncio.run(run())

    assert any(url.startswith("https://") for url in requested)
    assert final.status == "failed"
    assert final.error == "cancelled"
    assert final.results == []
    assert seen_after == seen_at_cancel


class LazySource:
    """Hands back a lazy listing and records the thread that reads it."""

    def __init__(self, files: list[tuple[str, str]]) -> None:
        self.files = files
        self.reader_threads: list[threading.Thread] = []

    async def fetch(self, repository: GitHubRepository, branch: str | None) -> Any:
        def listing() -> Any:
            for item in self.files:
                self.reader_threads.append(threading.current_thread())
                yield item

        return listing()


def test_link_extraction_runs_off_the_event_loop_thread() -> None:
    source = LazySource([("a.md", "https://example.com/home\n"), ("b.md", "https://example.com/about\n")])

    async def run() -> Any:
        client = httpx.AsyncClient(transport=httpx.MockTransport(_status_handler(set())), follow_redirects=False)
        orchestrator = Orchestrator(
            client=client,
            source=source,
            store=InMemoryResultStore(),
            verifier_options={"backoff_base_seconds": 0.0},
        )
        created = orchestrator.create(REPO_URL, "main")
        return await orchestrator.wait(created.id)

    session = asyncio.run(run())

    assert session.status == "completed"
    assert session.summary.total == 2
    assert len(source.reader_threads) == 2
    assert all(thread is not threading.main_thread() for thread in source.reader_threads)
