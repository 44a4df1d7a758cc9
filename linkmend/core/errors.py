from __future__ import annotations


class LinkmendError(Exception):
    """Base error for link checking runs."""

    code = "internal_error"


class RepositoryUnavailableError(LinkmendError):
    """Raised when repository content cannot be fetched."""

    code = "repository_unavailable"


class InvalidRepositoryUrlError(LinkmendError, ValueError):
    """Raised when a repository URL is not a github.com owner/repo URL."""

    code = "invalid_repository_url"


class NetworkTransientError(LinkmendError):
    """Raised for timeouts, resets and DNS failures while verifying a URL."""

    code = "network_transient"


class DefinitiveHttpError(LinkmendError):
    """Raised when a URL answers with a terminal 4xx/5xx status."""

    code = "http_error"

    def __init__(self, url: str, status_code: int) -> None:
        super().__init__(f"HTTP status code: {status_code}")
        self.url = url
        self.status_code = status_code


class AlreadyInProgressError(LinkmendError):
    """Raised when a run is requested for a key that already has an active session."""

    code = "already_in_progress"

    def __init__(self, repo_url: str, branch: str | None, session_id: str) -> None:
        super().__init__(f"check already in progress for {repo_url}@{branch or 'default'} (session {session_id})")
        self.repo_url = repo_url
        self.branch = branch
        self.session_id = session_id


class CancelledByUserError(LinkmendError):
    """Raised inside a pipeline once its session has been cancelled."""

    code = "cancelled"


class PublishFailureError(LinkmendError):
    """Raised when fixes could not be pushed or the pull request could not be opened."""

    code = "publish_failed"


class SessionNotFoundError(LinkmendError, KeyError):
    """Raised when a session id is unknown."""

    code = "not_found"

    def __str__(self) -> str:
        return Exception.__str__(self)
