"""Publish a drained check-suite batch.

For every queued upload (one per job):

  1. fetch the job's log text,
  2. resolve every uploaded blob to its manifest filename,
  3. write each artifact to each storage target of the repository.

Then one report comment goes to the pull request. Jobs run concurrently
and each produces a ``JobPublishResult``; a failing job is logged,
reported to Sentry and left out of the comment, without touching its
siblings.
"""

from __future__ import annotations

import asyncio
import logging

import httpx
import sentry_sdk

from buildrelay.core.config import RelayConfig
from buildrelay.publishing.logs import JobLogSource
from buildrelay.publishing.manifest import ManifestError, ManifestResolver
from buildrelay.publishing.report import ReportAggregator
from buildrelay.publishing.storage import StoragePublisher
from buildrelay.publishing.types import JobPublishResult, SuiteReport, UploadContext

logger = logging.getLogger(__name__)


class SuitePublisher:
    def __init__(
        self,
        config: RelayConfig,
        log_source: JobLogSource,
        storage: StoragePublisher,
        reporter: ReportAggregator,
        log_fetch_timeout: float = 60.0,
    ):
        self.config = config
        self.log_source = log_source
        self.storage = storage
        self.reporter = reporter
        self.resolver = ManifestResolver(config.build_file_hashes_pattern)
        self.log_fetch_timeout = log_fetch_timeout

    async def publish(self, suite_id: int, batch: list[UploadContext]) -> SuiteReport:
        report = SuiteReport(suite_id=suite_id)
        if not batch:
            logger.info("Check suite %d completed with no queued uploads", suite_id)
            return report

        logger.info("Publishing %d upload(s) for check suite %d", len(batch), suite_id)
        report.jobs = list(await asyncio.gather(*(self.publish_job(context) for context in batch)))

        report.message, report.delivered = await self.reporter.deliver(batch[0], report.jobs)
        return report

    async def publish_job(self, context: UploadContext) -> JobPublishResult:
        """Resolve and publish one job's upload. Never raises."""
        result = JobPublishResult(job_name=context.job_name)
        try:
            await self._publish_job(context, result)
        except ManifestError as exc:
            logger.warning("Publishing for job '%s' terminated: %s", context.job_name, exc)
            sentry_sdk.capture_exception(exc)
            result.error = str(exc)
        except Exception as exc:
            logger.exception("Publishing for job '%s' failed", context.job_name)
            sentry_sdk.capture_exception(exc)
            result.error = str(exc) or type(exc).__name__

        if result.error is not None:
            # All of a job's files publish or none are reported.
            result.urls = []
        return result

    async def _publish_job(self, context: UploadContext, result: JobPublishResult) -> None:
        repository = self.config.repository(context.owner, context.repo)
        if repository is None:
            raise LookupError(f"repository {context.full_name} is no longer configured")

        log_text = await self._fetch_log(context)
        artifacts = self.resolver.resolve_all(log_text, context.blobs)

        for artifact in artifacts:
            published = await self.storage.publish(artifact, context, repository.storages)
            result.artifacts.append(published)
            result.urls.extend(published.urls)

        logger.info(
            "Published %d artifact(s) for job '%s' with %d public URL(s)",
            len(artifacts), context.job_name, len(result.urls),
        )

    async def _fetch_log(self, context: UploadContext) -> str:
        try:
            return await self._fetch_log_once(context)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            logger.warning("Log retrieval for job '%s' timed out, retrying once", context.job_name)
        return await self._fetch_log_once(context)

    async def _fetch_log_once(self, context: UploadContext) -> str:
        return await asyncio.wait_for(
            self.log_source.fetch_job_log(context.owner, context.repo, context.run_id, context.job_name),
            timeout=self.log_fetch_timeout,
        )
