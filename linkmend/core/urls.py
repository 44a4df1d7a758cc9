from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from urllib.parse import urlparse, urlunparse

from linkmend.core.errors import InvalidRepositoryUrlError

GITHUB_HOSTS = {"github.com", "www.github.com"}
GITHUB_PATH_URL_RE = re.compile(
    r"^https?://(?:www\.)?github\.com/([^/\s]+)/([^/\s]+)/(tree|blob)/([^/\s]+)(?:/(.+))?$"
)


@dataclass(slots=True, frozen=True)
class GitHubRepository:
    owner: str
    name: str

    @property
    def url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(slots=True, frozen=True)
class GitHubPathUrl:
    owner: str
    repo: str
    kind: str
    branch: str
    path: str | None

    def with_branch(self, branch: str) -> str:
        url = f"https://github.com/{self.owner}/{self.repo}/{self.kind}/{branch}"
        if self.path:
            url = f"{url}/{self.path}"
        return url


def parse_repository_url(raw_url: str) -> GitHubRepository:
    """Validate ``https://github.com/{owner}/{repo}`` and return its parts."""
    candidate = (raw_url or "").strip()
    parsed = urlparse(candidate)
    if parsed.scheme != "https" or parsed.netloc.lower() not in GITHUB_HOSTS:
        raise InvalidRepositoryUrlError("URL must start with https://github.com/")
    if parsed.query or parsed.fragment:
        raise InvalidRepositoryUrlError("URL must be in format https://github.com/{owner}/{repo}")

    path = parsed.path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    parts = path.split("/")
    if len(parts) != 2 or not all(parts):
        raise InvalidRepositoryUrlError("URL must be in format https://github.com/{owner}/{repo}")
    return GitHubRepository(owner=parts[0], name=parts[1])


def parse_github_path_url(url: str) -> GitHubPathUrl | None:
    match = GITHUB_PATH_URL_RE.match(url.split("#", 1)[0].split("?", 1)[0])
    if match is None:
        return None
    owner, repo, kind, branch, path = match.groups()
    return GitHubPathUrl(owner=owner, repo=repo, kind=kind, branch=branch, path=path.rstrip("/") if path else None)


def is_loopback_or_ip_host(host: str) -> bool:
    host = host.lower().strip("[]")
    if host == "localhost" or host.endswith(".localhost"):
        return True
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def swap_scheme(url: str) -> str | None:
    parsed = urlparse(url)
    if parsed.scheme == "http":
        return urlunparse(parsed._replace(scheme="https"))
    if parsed.scheme == "https":
        return urlunparse(parsed._replace(scheme="http"))
    return None


def toggle_trailing_slash(url: str) -> str | None:
    parsed = urlparse(url)
    path = parsed.path
    if path in {"", "/"}:
        return None
    if path.endswith("/"):
        return urlunparse(parsed._replace(path=path.rstrip("/")))
    return urlunparse(parsed._replace(path=f"{path}/"))


def lowercase_path(url: str) -> str | None:
    parsed = urlparse(url)
    lowered = parsed.path.lower()
    if lowered == parsed.path:
        return None
    return urlunparse(parsed._replace(path=lowered))


def is_trivial_redirect(original: str, target: str) -> bool:
    """True when ``target`` differs from ``original`` only by a trailing slash."""
    source = urlparse(original)
    dest = urlparse(target)
    if (source.scheme, source.netloc.lower(), source.query) != (dest.scheme, dest.netloc.lower(), dest.query):
        return False
    stripped = source.path.rstrip("/")
    return dest.path in {stripped, f"{stripped}/"}
