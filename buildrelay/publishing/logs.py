"""Where job log text comes from.

The publishing pipeline only needs "the raw log of job X in workflow run
Y". ``GitHubJobLogSource`` reads it from the Actions API. Sources backed
by a single shared resource are wrapped in ``SerializedLogSource`` so
only one retrieval runs at a time across the process.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from buildrelay.github import client as github_client

logger = logging.getLogger(__name__)


class JobNotFoundError(Exception):
    """The workflow run has no job with the uploading job's name."""


class JobLogSource(Protocol):
    async def fetch_job_log(self, owner: str, repo: str, run_id: int, job_name: str) -> str: ...


class GitHubJobLogSource:
    """Job logs through the Actions REST API."""

    async def fetch_job_log(self, owner: str, repo: str, run_id: int, job_name: str) -> str:
        jobs = await github_client.list_jobs_for_workflow_run(owner, repo, run_id)
        job = next((j for j in jobs if j.get("name") == job_name), None)
        if job is None:
            raise JobNotFoundError(f"workflow run {run_id} has no job named {job_name!r}")

        if job.get("status") != "completed":
            logger.warning("Job '%s' (%s) is %s; its log may be incomplete", job_name, job["id"], job.get("status"))

        return await github_client.get_job_logs(owner, repo, job["id"])


class SerializedLogSource:
    """Gate a log source so retrievals never overlap.

    Callers block on the lock; it is released on every exit path,
    including cancellation and errors from the wrapped source.
    """

    def __init__(self, inner: JobLogSource):
        self._inner = inner
        self._lock = asyncio.Lock()

    async def fetch_job_log(self, owner: str, repo: str, run_id: int, job_name: str) -> str:
        async with self._lock:
            return await self._inner.fetch_job_log(owner, repo, run_id, job_name)
