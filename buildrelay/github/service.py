"""Upload gate and check-suite lookup built on the GitHub client.

An upload is accepted only when:
  - the pull request author is an owner, member or collaborator of the
    repository, or the pull request carries the allow-upload label; and
  - the declared commit is one of the pull request's commits.

The check-suite id of an upload comes from the check run GitHub created for
the uploading job on that commit.
"""

import logging

from buildrelay.github import client as github_client

logger = logging.getLogger(__name__)

TRUSTED_AUTHOR_ASSOCIATIONS = frozenset({"OWNER", "MEMBER", "COLLABORATOR"})


class UploadNotPermittedError(Exception):
    """The pull request or commit is not allowed to publish builds."""


class CheckRunNotFoundError(Exception):
    """No check run exists for the uploading job on the declared commit."""


def is_pull_request_upload_allowed(pull_request: dict, allowed_label: str) -> bool:
    if pull_request.get("author_association") in TRUSTED_AUTHOR_ASSOCIATIONS:
        return True
    return any(label.get("name") == allowed_label for label in pull_request.get("labels", []))


async def authorize_upload(
    owner: str,
    repo: str,
    pull_number: int,
    commit_hash: str,
    allowed_label: str,
) -> dict:
    """Check the pull request gate and commit membership.

    Returns the pull request data.

    Raises:
        UploadNotPermittedError: If either check fails.
        httpx.HTTPStatusError: If GitHub rejects a lookup.
    """
    pull_request = await github_client.get_pull_request(owner, repo, pull_number)
    if not is_pull_request_upload_allowed(pull_request, allowed_label):
        raise UploadNotPermittedError(
            f"Please label PR build next time with the {allowed_label} label."
        )

    commits = await github_client.list_pull_commits(owner, repo, pull_number)
    if not any(commit.get("sha") == commit_hash for commit in commits):
        raise UploadNotPermittedError(f"Pull request does not contain commit sha: {commit_hash}.")

    return pull_request


async def find_check_suite_id(owner: str, repo: str, commit_hash: str, job_name: str) -> int:
    """Suite id of the job's check run on ``commit_hash``.

    Raises:
        CheckRunNotFoundError: If GitHub lists no check run for the job.
    """
    check_runs = await github_client.list_check_runs_for_ref(owner, repo, commit_hash, job_name)
    if not check_runs:
        raise CheckRunNotFoundError(f"No check run named {job_name!r} on commit {commit_hash}.")

    check_run = check_runs[0]
    suite_id = check_run["check_suite"]["id"]
    logger.info("Check run %s of job '%s' belongs to check suite %s", check_run.get("id"), job_name, suite_id)
    return suite_id
