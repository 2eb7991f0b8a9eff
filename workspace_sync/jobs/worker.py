"""
Background worker entrypoint.

``workspace-sync-worker [job]`` runs one registered job to completion. The
job name comes from the first CLI argument, else from WORKER_JOB.
"""

import asyncio
import sys
import time
from collections.abc import Awaitable, Callable
from typing import Any

from workspace_sync.config import settings
from workspace_sync.infrastructure.observability.logging import get_logger
from workspace_sync.jobs.unified_sync_job import run_unified_sync_job

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[Any]]

JOB_REGISTRY: dict[str, JobCoroutine] = {
    "unified_sync": run_unified_sync_job,
}


def _resolve_job_name() -> str:
    raw = sys.argv[1] if len(sys.argv) > 1 else settings.WORKER_JOB
    return raw.strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """
    Run one registered job.

    Raises:
        ValueError: the job name is not in JOB_REGISTRY
    """
    name = (job_name or _resolve_job_name()).strip().lower()
    job = JOB_REGISTRY.get(name)
    if job is None:
        available = ", ".join(sorted(JOB_REGISTRY))
        raise ValueError(f"Unknown worker job '{name}'. Available jobs: {available}")

    started = time.perf_counter()
    logger.info("Worker job starting", job=name)
    await job()
    logger.info(
        "Worker job completed",
        job=name,
        duration_seconds=round(time.perf_counter() - started, 2),
    )


def main() -> None:
    asyncio.run(run_worker(_resolve_job_name()))


if __name__ == "__main__":
    main()
