from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

SessionStatus = Literal["pending", "processing", "completed", "failed"]


class LinkResultOut(BaseModel):
    file_path: str
    line_number: int
    url: str
    http_status: int | None = None
    ok: bool
    message: str
    suggested_url: str | None = None


class SessionSummaryOut(BaseModel):
    total: int = 0
    valid: int = 0
    broken: int = 0
    fixed: int = 0


class SessionOut(BaseModel):
    id: str
    repo_url: str
    branch: str | None = None
    status: SessionStatus
    results: list[LinkResultOut] = Field(default_factory=list)
    summary: SessionSummaryOut = Field(default_factory=SessionSummaryOut)
    error: str | None = None
    error_code: str | None = None
    pr_url: str | None = None
    created_at: datetime
    finished_at: datetime | None = None
