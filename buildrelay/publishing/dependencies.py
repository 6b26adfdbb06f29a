"""FastAPI dependencies for the publishing stage.

The aggregator and the log source are process-wide and live on
``app.state`` (created in ``create_app()``). The suite publisher is built
per webhook from the current relay config.
"""

from fastapi import Depends, Request

from buildrelay.core.config import RelayConfig, Settings, get_relay_config, get_settings
from buildrelay.github import client as github_client
from buildrelay.publishing.aggregator import SuiteAggregator
from buildrelay.publishing.logs import JobLogSource
from buildrelay.publishing.pipeline import SuitePublisher
from buildrelay.publishing.report import ReportAggregator
from buildrelay.publishing.storage import StoragePublisher


def get_aggregator(request: Request) -> SuiteAggregator:
    return request.app.state.aggregator


def get_log_source(request: Request) -> JobLogSource:
    return request.app.state.log_source


def get_suite_publisher(
    config: RelayConfig = Depends(get_relay_config),
    settings: Settings = Depends(get_settings),
    log_source: JobLogSource = Depends(get_log_source),
) -> SuitePublisher:
    return SuitePublisher(
        config=config,
        log_source=log_source,
        storage=StoragePublisher(config.storages, write_timeout=settings.storage_write_timeout_seconds),
        reporter=ReportAggregator(github_client.create_issue_comment),
        log_fetch_timeout=settings.log_fetch_timeout_seconds,
    )
