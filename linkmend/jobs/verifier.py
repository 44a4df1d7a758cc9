from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar
from urllib.parse import urljoin, urlparse

import httpx
from opentelemetry import trace

from linkmend.core.cancellation import CancellationToken
from linkmend.core.errors import DefinitiveHttpError, NetworkTransientError
from linkmend.core.urls import is_trivial_redirect
from linkmend.jobs.extractor import RawLink

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")

REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
# Servers that refuse HEAD outright; the check is repeated with GET.
HEAD_REJECTED_STATUS_CODES = {403, 405, 501}
MAX_REDIRECT_HOPS = 10
TRANSIENT_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    asyncio.TimeoutError,
)


@dataclass(slots=True)
class UrlVerdict:
    url: str
    ok: bool
    status_code: int | None
    message: str
    final_url: str
    redirect_chain: list[dict[str, Any]] = field(default_factory=list)
    chain_succeeded: bool = False


@dataclass(slots=True)
class LinkVerification:
    file_path: str
    line_number: int
    url: str
    http_status: int | None
    ok: bool
    message: str
    suggested_url: str | None = None

    @classmethod
    def from_verdict(cls, link: RawLink, verdict: UrlVerdict) -> "LinkVerification":
        return cls(
            file_path=link.file_path,
            line_number=link.line_number,
            url=link.url,
            http_status=verdict.status_code,
            ok=verdict.ok,
            message=verdict.message,
        )


class LinkVerifier:
    """Checks URL reachability for one session.

    One verdict is computed per distinct URL and shared by every occurrence;
    at most ``max_concurrency`` checks have requests outstanding at a time.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        cancel: CancellationToken,
        max_concurrency: int = 12,
        max_retries: int = 2,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        max_redirect_hops: int = MAX_REDIRECT_HOPS,
        request_timeout_seconds: float = 10.0,
        redirects_as_broken: bool = False,
    ) -> None:
        self.client = client
        self.cancel = cancel
        self.max_retries = max(0, max_retries)
        self.backoff_base_seconds = max(0.0, backoff_base_seconds)
        self.backoff_max_seconds = max(0.0, backoff_max_seconds)
        self.max_redirect_hops = max(1, max_redirect_hops)
        self.request_timeout_seconds = request_timeout_seconds
        self.redirects_as_broken = redirects_as_broken
        self._slots = asyncio.Semaphore(max(1, max_concurrency))
        self._verdicts: dict[str, asyncio.Task[UrlVerdict]] = {}

    async def run_bounded(self, request: Callable[[], Awaitable[T]]) -> T:
        """Run other outbound work for this session under the same slots and cancellation token."""
        async with self._slots:
            self.cancel.raise_if_cancelled()
            return await self.cancel.run(request())

    async def verify_links(self, links: Iterable[RawLink]) -> list[LinkVerification]:
        """Verify every occurrence; the result list keeps the input order."""
        occurrences = list(links)
        results: list[LinkVerification | None] = [None] * len(occurrences)

        async def fill(index: int, link: RawLink) -> None:
            verdict = await self.verify_url(link.url)
            results[index] = LinkVerification.from_verdict(link, verdict)

        try:
            await asyncio.gather(*(fill(index, link) for index, link in enumerate(occurrences)))
        except BaseException:
            self.cancel_pending()
            raise
        return [result for result in results if result is not None]

    async def verify_url(self, url: str) -> UrlVerdict:
        task = self._verdicts.get(url)
        if task is None:
            self.cancel.raise_if_cancelled()
            task = asyncio.ensure_future(self._verify_once(url))
            self._verdicts[url] = task
        return await asyncio.shield(task)

    def cancel_pending(self) -> None:
        for task in self._verdicts.values():
            if not task.done():
                task.cancel()

    async def _verify_once(self, url: str) -> UrlVerdict:
        async with self._slots:
            self.cancel.raise_if_cancelled()
            with tracer.start_as_current_span("linkmend.verify_url") as span:
                span.set_attribute("url.full", url)
                verdict = await self._check(url)
                span.set_attribute("linkmend.link.ok", verdict.ok)
                if verdict.status_code is not None:
                    span.set_attribute("http.response.status_code", verdict.status_code)
        logger.debug("link checked url=%s ok=%s status=%s message=%s", url, verdict.ok, verdict.status_code, verdict.message)
        return verdict

    async def _check(self, url: str) -> UrlVerdict:
        resolution: dict[str, Any] | None = None
        try:
            resolution = await self._resolve_redirect_chain(url, method="HEAD")
            if resolution["final_status_code"] in HEAD_REJECTED_STATUS_CODES:
                resolution = await self._resolve_redirect_chain(url, method="GET")
            final_status = resolution["final_status_code"]
            if final_status is not None and final_status >= 400:
                raise DefinitiveHttpError(url, final_status)
        except NetworkTransientError as exc:
            return UrlVerdict(url=url, ok=False, status_code=None, message=str(exc), final_url=url)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return UrlVerdict(url=url, ok=False, status_code=None, message=f"Request error: {exc}", final_url=url)
        except DefinitiveHttpError as exc:
            return UrlVerdict(
                url=url,
                ok=False,
                status_code=exc.status_code,
                message=str(exc),
                final_url=resolution["resolved_url"] if resolution else url,
                redirect_chain=resolution["redirect_chain"] if resolution else [],
            )
        return self._classify(url, resolution)

    def _classify(self, url: str, resolution: dict[str, Any]) -> UrlVerdict:
        status_code = resolution["final_status_code"]
        final_url = resolution["resolved_url"]
        chain = resolution["redirect_chain"]
        reason = resolution["reason"]

        if reason == "redirect_loop_detected":
            return UrlVerdict(url, False, status_code, "redirect loop detected", final_url, chain)
        if reason == "redirect_hop_limit_exceeded":
            message = f"too many redirects (more than {self.max_redirect_hops})"
            return UrlVerdict(url, False, status_code, message, final_url, chain)
        if reason == "unsupported_scheme":
            return UrlVerdict(url, False, status_code, f"redirected to unsupported URL: {final_url}", final_url, chain)

        # 2xx, or a 3xx without a Location to follow.
        succeeded = status_code is not None and 200 <= status_code < 400
        if not succeeded:
            return UrlVerdict(url, False, status_code, f"unexpected HTTP status code: {status_code}", final_url, chain)
        if self.redirects_as_broken and chain and not is_trivial_redirect(url, final_url):
            return UrlVerdict(url, False, status_code, f"redirected to {final_url}", final_url, chain, True)
        return UrlVerdict(url, True, status_code, "valid", final_url, chain, True)

    async def _resolve_redirect_chain(self, source_url: str, *, method: str) -> dict[str, Any]:
        current_url = source_url
        seen_urls: set[str] = set()
        redirect_chain: list[dict[str, Any]] = []
        final_status_code: int | None = None
        reason = "no_redirect"

        for _ in range(self.max_redirect_hops + 1):
            if urlparse(current_url).scheme.lower() not in {"http", "https"}:
                reason = "unsupported_scheme"
                break
            if current_url in seen_urls:
                reason = "redirect_loop_detected"
                break
            seen_urls.add(current_url)

            status_code, location, response_url = await self._send(method, current_url)
            final_status_code = status_code
            if status_code in REDIRECT_STATUS_CODES and location:
                if len(redirect_chain) >= self.max_redirect_hops:
                    reason = "redirect_hop_limit_exceeded"
                    break
                next_url = urljoin(response_url, location)
                redirect_chain.append({"from_url": response_url, "to_url": next_url, "status_code": status_code})
                current_url = next_url
                continue
            current_url = response_url
            reason = "resolved"
            break

        return {
            "resolved_url": current_url,
            "redirect_chain": redirect_chain,
            "reason": reason,
            "final_status_code": final_status_code,
        }

    async def _send(self, method: str, url: str) -> tuple[int, str | None, str]:
        attempt = 0
        while True:
            self.cancel.raise_if_cancelled()
            try:
                return await self.cancel.run(asyncio.wait_for(self._request(method, url), self.request_timeout_seconds))
            except TRANSIENT_ERRORS as exc:
                if attempt >= self.max_retries:
                    detail = str(exc) or exc.__class__.__name__
                    raise NetworkTransientError(f"Request error: {detail}") from exc
                delay = min(self.backoff_base_seconds * (2**attempt), self.backoff_max_seconds)
                attempt += 1
                logger.info("transient failure url=%s attempt=%s retry_in=%.2fs error=%r", url, attempt, delay, exc)
                await self.cancel.sleep(delay)

    async def _request(self, method: str, url: str) -> tuple[int, str | None, str]:
        request = self.client.build_request(method, url)
        response = await self.client.send(request, stream=True, follow_redirects=False)
        try:
            return int(response.status_code), response.headers.get("location"), str(response.url)
        finally:
            await response.aclose()
