"""GitHub REST client for the calls the relay needs.

Uses httpx for async HTTP calls, authenticated with the token from
``Settings.github_auth_token``:

1. Pull request metadata and commits (upload gate)
2. Check runs for a commit (suite id of an upload)
3. Jobs of a workflow run and a job's log text (manifest source)
4. Issue comments (the links report)
"""

from __future__ import annotations

from typing import Any

import httpx

from buildrelay.core.config import get_settings

COMMITS_PER_PAGE = 100
JOBS_PER_PAGE = 100


def _auth_headers(token: str) -> dict[str, str]:
    headers = {
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


def _client(**kwargs: Any) -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(
        base_url=settings.github_api_base,
        headers=_auth_headers(settings.github_auth_token),
        timeout=settings.github_timeout_seconds,
        **kwargs,
    )


async def get_pull_request(owner: str, repo: str, pull_number: int) -> dict:
    """GET /repos/{owner}/{repo}/pulls/{pull_number}"""
    async with _client() as client:
        response = await client.get(f"/repos/{owner}/{repo}/pulls/{pull_number}")
        response.raise_for_status()
        return response.json()


async def list_pull_commits(owner: str, repo: str, pull_number: int) -> list[dict]:
    """All commits of a pull request, following pagination.

    GitHub caps this listing at 250 commits.
    """
    commits: list[dict] = []
    page = 1
    async with _client() as client:
        while True:
            response = await client.get(
                f"/repos/{owner}/{repo}/pulls/{pull_number}/commits",
                params={"per_page": COMMITS_PER_PAGE, "page": page},
            )
            response.raise_for_status()
            batch = response.json()
            commits.extend(batch)
            if len(batch) < COMMITS_PER_PAGE:
                return commits
            page += 1


async def list_check_runs_for_ref(owner: str, repo: str, ref: str, check_name: str) -> list[dict]:
    """GET /repos/{owner}/{repo}/commits/{ref}/check-runs?check_name=..."""
    async with _client() as client:
        response = await client.get(
            f"/repos/{owner}/{repo}/commits/{ref}/check-runs",
            params={"check_name": check_name},
        )
        response.raise_for_status()
        return response.json().get("check_runs", [])


async def list_jobs_for_workflow_run(owner: str, repo: str, run_id: int) -> list[dict]:
    """All jobs of a workflow run, following pagination."""
    jobs: list[dict] = []
    page = 1
    async with _client() as client:
        while True:
            response = await client.get(
                f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs",
                params={"per_page": JOBS_PER_PAGE, "page": page},
            )
            response.raise_for_status()
            data = response.json()
            batch = data.get("jobs", [])
            jobs.extend(batch)
            total = data.get("total_count")
            if len(batch) < JOBS_PER_PAGE or (total is not None and len(jobs) >= total):
                return jobs
            page += 1


async def get_job_logs(owner: str, repo: str, job_id: int) -> str:
    """Plain-text log of one Actions job.

    GitHub answers with a redirect to a short-lived download URL.
    """
    async with _client(follow_redirects=True) as client:
        response = await client.get(f"/repos/{owner}/{repo}/actions/jobs/{job_id}/logs")
        response.raise_for_status()
        return response.text


async def create_issue_comment(owner: str, repo: str, issue_number: int, body: str) -> dict:
    """POST /repos/{owner}/{repo}/issues/{issue_number}/comments"""
    async with _client() as client:
        response = await client.post(
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            json={"body": body},
        )
        response.raise_for_status()
        return response.json()
