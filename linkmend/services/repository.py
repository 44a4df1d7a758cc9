from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

import asyncpg  # type: ignore[import-untyped]

from linkmend.services.publisher import Correction


class StoreError(Exception):
    """Base result store error."""


class StoreUnavailableError(StoreError):
    """Raised when the database is unavailable or not configured."""


@dataclass(slots=True)
class TrackedRepositoryRecord:
    id: int
    repo_url: str
    branch: str | None
    checked_at: datetime


@dataclass(slots=True)
class CheckResultRecord:
    id: int
    repo_id: int
    file_path: str
    line_number: int
    old_content: str
    new_content: str


class ResultStore(Protocol):
    async def save(
        self,
        repo_url: str,
        branch: str | None,
        corrections: Sequence[Correction],
    ) -> tuple[TrackedRepositoryRecord, list[CheckResultRecord]]:
        """Upsert the repository row and insert one check_result row per correction."""

    async def close(self) -> None: ...


class InMemoryResultStore:
    """Process-local store used when no database is configured."""

    def __init__(self) -> None:
        self.repositories: dict[int, TrackedRepositoryRecord] = {}
        self.check_results: list[CheckResultRecord] = []
        self._next_repo_id = 1
        self._next_result_id = 1

    async def save(
        self,
        repo_url: str,
        branch: str | None,
        corrections: Sequence[Correction],
    ) -> tuple[TrackedRepositoryRecord, list[CheckResultRecord]]:
        now = datetime.now(timezone.utc)
        repository = self.find_repository(repo_url, branch)
        if repository is None:
            repository = TrackedRepositoryRecord(id=self._next_repo_id, repo_url=repo_url, branch=branch, checked_at=now)
            self.repositories[repository.id] = repository
            self._next_repo_id += 1
        else:
            repository.checked_at = now

        inserted: list[CheckResultRecord] = []
        for correction in corrections:
            record = CheckResultRecord(
                id=self._next_result_id,
                repo_id=repository.id,
                file_path=correction.file_path,
                line_number=correction.line_number,
                old_content=correction.old_content,
                new_content=correction.new_content,
            )
            self._next_result_id += 1
            inserted.append(record)
        self.check_results.extend(inserted)
        return repository, inserted

    def find_repository(self, repo_url: str, branch: str | None) -> TrackedRepositoryRecord | None:
        for repository in self.repositories.values():
            if repository.repo_url == repo_url and repository.branch == branch:
                return repository
        return None

    async def close(self) -> None:
        return None


class PostgresResultStore:
    def __init__(self, database_url: str | None, min_pool_size: int = 1, max_pool_size: int = 5) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def save(
        self,
        repo_url: str,
        branch: str | None,
        corrections: Sequence[Correction],
    ) -> tuple[TrackedRepositoryRecord, list[CheckResultRecord]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    """
                    select id
                    from repo
                    where repo_url = $1
                      and branch is not distinct from $2
                    order by id
                    limit 1
                    for update
                    """,
                    repo_url,
                    branch,
                )
                if existing is not None:
                    repo_row = await conn.fetchrow(
                        """
                        update repo
                        set checked_at = now()
                        where id = $1
                        returning id, repo_url, branch, checked_at
                        """,
                        existing["id"],
                    )
                else:
                    repo_row = await conn.fetchrow(
                        """
                        insert into repo (repo_url, branch, checked_at)
                        values ($1, $2, now())
                        returning id, repo_url, branch, checked_at
                        """,
                        repo_url,
                        branch,
                    )

                result_rows = []
                if corrections:
                    result_rows = await conn.fetch(
                        """
                        insert into check_result (repo_id, file_path, line_number, old_content, new_content)
                        select $1, file_path, line_number, old_content, new_content
                        from unnest($2::text[], $3::int[], $4::text[], $5::text[])
                          as fixes(file_path, line_number, old_content, new_content)
                        returning id, repo_id, file_path, line_number, old_content, new_content
                        """,
                        repo_row["id"],
                        [item.file_path for item in corrections],
                        [item.line_number for item in corrections],
                        [item.old_content for item in corrections],
                        [item.new_content for item in corrections],
                    )

        return self._repo_row_to_record(repo_row), [self._result_row_to_record(row) for row in result_rows]

    async def get_repository(self, repo_url: str, branch: str | None) -> TrackedRepositoryRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select id, repo_url, branch, checked_at
            from repo
            where repo_url = $1
              and branch is not distinct from $2
            order by id
            limit 1
            """,
            repo_url,
            branch,
        )
        return self._repo_row_to_record(row) if row is not None else None

    async def list_check_results(self, repo_id: int) -> list[CheckResultRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id, repo_id, file_path, line_number, old_content, new_content
            from check_result
            where repo_id = $1
            order by id
            """,
            repo_id,
        )
        return [self._result_row_to_record(row) for row in rows]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("LINKMEND_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc

    @staticmethod
    def _repo_row_to_record(row: asyncpg.Record) -> TrackedRepositoryRecord:
        return TrackedRepositoryRecord(
            id=int(row["id"]),
            repo_url=row["repo_url"],
            branch=row["branch"],
            checked_at=row["checked_at"],
        )

    @staticmethod
    def _result_row_to_record(row: asyncpg.Record) -> CheckResultRecord:
        return CheckResultRecord(
            id=int(row["id"]),
            repo_id=int(row["repo_id"]),
            file_path=row["file_path"],
            line_number=int(row["line_number"]),
            old_content=row["old_content"],
            new_content=row["new_content"],
        )


def build_result_store(
    database_url: str | None,
    *,
    min_pool_size: int = 1,
    max_pool_size: int = 5,
) -> ResultStore:
    if not database_url:
        return InMemoryResultStore()
    return PostgresResultStore(database_url, min_pool_size=min_pool_size, max_pool_size=max_pool_size)
