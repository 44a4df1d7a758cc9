from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from linkmend.core.config import get_settings
from linkmend.core.errors import AlreadyInProgressError, InvalidRepositoryUrlError
from linkmend.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from linkmend.services.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


async def run_check(repo_url: str, branch: str | None, *, publish: bool) -> int:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    if not publish:
        settings = settings.model_copy(update={"publish_enabled": False})
    orchestrator = Orchestrator.from_settings(settings)

    try:
        try:
            created = orchestrator.create(repo_url, branch)
        except (InvalidRepositoryUrlError, AlreadyInProgressError) as exc:
            logger.error("check rejected: %s", exc)
            return 2

        try:
            session = await orchestrator.wait(created.id)
        except asyncio.CancelledError:
            orchestrator.cancel(repo_url, branch)
            raise

        print(session.model_dump_json(indent=2))
        return 0 if session.status == "completed" else 1
    finally:
        await orchestrator.aclose()
        shutdown_telemetry(telemetry_runtime)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Check the links of a GitHub repository and propose fixes.")
    parser.add_argument("repo_url", help="Repository URL, https://github.com/{owner}/{repo}")
    parser.add_argument("--branch", default=None, help="Branch to check (default branch when omitted)")
    parser.add_argument(
        "--no-publish",
        action="store_true",
        help="Do not open a pull request for the fixes that were found",
    )
    args = parser.parse_args(argv)
    return asyncio.run(run_check(args.repo_url, args.branch, publish=not args.no_publish))


if __name__ == "__main__":
    sys.exit(main())
