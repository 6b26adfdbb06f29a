"""Consolidated pull request comment listing a suite's published links."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Iterable, Optional

import sentry_sdk

from buildrelay.publishing.types import JobPublishResult, UploadContext

logger = logging.getLogger(__name__)

REPORT_HEADER = "The following links are available: \n"

# (owner, repo, pull_number, body) -> posted comment
CommentPoster = Callable[[str, str, int, str], Awaitable[dict]]


def merge_job_urls(results: Iterable[JobPublishResult]) -> dict[str, list[str]]:
    """Job name -> URLs, in the order jobs were first seen."""
    merged: dict[str, list[str]] = {}
    for result in results:
        if result.urls:
            merged.setdefault(result.job_name, []).extend(result.urls)
    return merged


class ReportAggregator:
    """Renders one message per suite and posts it to the pull request."""

    def __init__(self, post_comment: CommentPoster):
        self._post_comment = post_comment

    @staticmethod
    def render(results: Iterable[JobPublishResult]) -> Optional[str]:
        """Return the comment body, or None when no job produced a URL."""
        urls_by_job = merge_job_urls(results)
        if not urls_by_job:
            return None

        message = ""
        for job_name, urls in urls_by_job.items():
            message += f"**{job_name}**\n - " + "\n - ".join(urls) + "\n\n"
        return REPORT_HEADER + message

    async def deliver(self, identity: UploadContext, results: list[JobPublishResult]) -> tuple[Optional[str], bool]:
        """Post the report to ``identity``'s pull request.

        ``identity`` is the first upload of the batch; every upload in a
        suite is expected to target the same pull request.

        Returns the rendered message (or None) and whether it was posted.
        """
        message = self.render(results)
        if message is None:
            logger.info("No public URLs for %s#%d; skipping comment", identity.full_name, identity.pull_number)
            return None, False

        try:
            await self._post_comment(identity.owner, identity.repo, identity.pull_number, message)
        except Exception as exc:
            logger.error("Failed to comment on %s#%d: %s", identity.full_name, identity.pull_number, exc)
            sentry_sdk.capture_exception(exc)
            return message, False

        logger.info("Posted build links to %s#%d", identity.full_name, identity.pull_number)
        return message, True
