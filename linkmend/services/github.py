"""
GitHub REST API client.

Covers what link checking needs from GitHub: default-branch lookup, path
existence and rename history for suggestions, branch tarballs for scanning,
and the branch, contents and pulls endpoints for opening a fix pull request.
"""

from __future__ import annotations

import base64
from typing import Any
from urllib.parse import quote

import httpx

from linkmend.core.errors import LinkmendError


class GitHubApiError(LinkmendError):
    """Raised when the GitHub API answers with an unexpected status."""

    code = "github_api_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubClient:
    """Thin async wrapper over the GitHub REST API."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        token: str | None = None,
        base_url: str = "https://api.github.com",
        user_agent: str = "linkmend-link-checker/1.0",
    ) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": user_agent,
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            self.headers["Authorization"] = f"Bearer {token}"

    async def get_default_branch(self, owner: str, repo: str) -> str:
        payload = await self._request_json("GET", f"/repos/{owner}/{repo}")
        branch = payload.get("default_branch")
        if not isinstance(branch, str) or not branch:
            raise GitHubApiError(f"no default branch reported for {owner}/{repo}")
        return branch

    async def path_exists(self, owner: str, repo: str, path: str, *, ref: str) -> bool:
        response = await self.client.get(
            self._url(f"/repos/{owner}/{repo}/contents/{quote(path)}"),
            params={"ref": ref},
            headers=self.headers,
        )
        if response.status_code == 404:
            return False
        self._raise_for_status(response)
        return True

    async def get_last_commit_for_path(self, owner: str, repo: str, path: str, *, ref: str) -> str | None:
        """Return the sha of the newest commit on ``ref`` that touched ``path``, if any."""
        response = await self.client.get(
            self._url(f"/repos/{owner}/{repo}/commits"),
            params={"path": path, "sha": ref, "per_page": 1},
            headers=self.headers,
        )
        if response.status_code in {404, 409}:
            return None
        self._raise_for_status(response)
        commits = response.json()
        if not isinstance(commits, list) or not commits:
            return None
        return str(commits[0]["sha"])

    async def get_commit_files(self, owner: str, repo: str, sha: str) -> list[dict[str, Any]]:
        payload = await self._request_json("GET", f"/repos/{owner}/{repo}/commits/{sha}")
        files = payload.get("files") or []
        return [item for item in files if isinstance(item, dict)]

    async def download_tarball(self, owner: str, repo: str, ref: str | None = None) -> bytes:
        path = f"/repos/{owner}/{repo}/tarball"
        if ref:
            path = f"{path}/{quote(ref, safe='')}"
        response = await self.client.get(self._url(path), headers=self.headers, follow_redirects=True)
        self._raise_for_status(response)
        return response.content

    async def get_branch_head(self, owner: str, repo: str, branch: str) -> str:
        payload = await self._request_json("GET", f"/repos/{owner}/{repo}/git/ref/heads/{quote(branch)}")
        return str(payload["object"]["sha"])

    async def create_branch(self, owner: str, repo: str, branch: str, sha: str) -> None:
        await self._request_json(
            "POST",
            f"/repos/{owner}/{repo}/git/refs",
            json={"ref": f"refs/heads/{branch}", "sha": sha},
        )

    async def get_file(self, owner: str, repo: str, path: str, *, ref: str) -> tuple[str, str]:
        """Return ``(text, blob_sha)`` for a file at ``ref``."""
        payload = await self._request_json(
            "GET",
            f"/repos/{owner}/{repo}/contents/{quote(path)}",
            params={"ref": ref},
        )
        encoded = payload.get("content") or ""
        text = base64.b64decode(encoded).decode("utf-8")
        return text, str(payload["sha"])

    async def update_file(
        self,
        owner: str,
        repo: str,
        path: str,
        *,
        content: str,
        sha: str,
        branch: str,
        message: str,
    ) -> None:
        await self._request_json(
            "PUT",
            f"/repos/{owner}/{repo}/contents/{quote(path)}",
            json={
                "message": message,
                "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                "sha": sha,
                "branch": branch,
            },
        )

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        *,
        title: str,
        head: str,
        base: str,
        body: str,
    ) -> str:
        payload = await self._request_json(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json={"title": title, "head": head, "base": base, "body": body},
        )
        html_url = payload.get("html_url")
        if not html_url:
            raise GitHubApiError("PR created but no URL returned by GitHub API")
        return str(html_url)

    async def _request_json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self.client.request(method, self._url(path), headers=self.headers, **kwargs)
        self._raise_for_status(response)
        return response.json()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        try:
            payload = response.json()
        except ValueError:
            payload = None
        detail = str(payload.get("message") or "") if isinstance(payload, dict) else response.text[:200]
        message = f"GitHub API {response.request.method} {response.request.url.path} failed with {response.status_code}"
        if detail:
            message = f"{message}: {detail}"
        raise GitHubApiError(message, status_code=response.status_code)
