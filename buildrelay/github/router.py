"""GitHub webhook endpoint.

The endpoint is public but every delivery must carry a valid HMAC
signature made with the sending repository's ``gh_notify_secret``.
A ``check_suite`` ``completed`` event drains that suite's queued uploads
and publishes them in the background; every other event is acknowledged
and ignored.
"""

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status

from buildrelay.core.config import RelayConfig, get_relay_config
from buildrelay.github.schemas import WebhookResponse
from buildrelay.github.webhooks import (
    SignatureMismatchError,
    parse_check_suite_event,
    require_valid_signature,
)
from buildrelay.publishing.aggregator import SuiteAggregator
from buildrelay.publishing.dependencies import get_aggregator, get_suite_publisher
from buildrelay.publishing.pipeline import SuitePublisher

logger = logging.getLogger(__name__)

router = APIRouter(tags=["github"])


@router.post("/webhook", response_model=WebhookResponse)
async def handle_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: str = Header(default=""),
    x_hub_signature: str = Header(default=""),
    x_github_event: str = Header(default=""),
    config: RelayConfig = Depends(get_relay_config),
    aggregator: SuiteAggregator = Depends(get_aggregator),
    publisher: SuitePublisher = Depends(get_suite_publisher),
) -> WebhookResponse:
    """Verify a GitHub delivery and publish the suite it reports as completed."""
    body = await request.body()

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed webhook payload.")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed webhook payload.")

    try:
        full_name = require_valid_signature(
            body,
            payload,
            config,
            signature_256=x_hub_signature_256,
            signature_sha1=x_hub_signature,
        )
    except SignatureMismatchError as exc:
        logger.warning("Rejected webhook delivery: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Webhook authentication failure.",
        )

    if x_github_event != "check_suite" or payload.get("action") != "completed":
        return WebhookResponse(received=True, event=x_github_event, action="ignored")

    event = parse_check_suite_event(payload)
    suite_id = event["check_suite_id"]
    if not isinstance(suite_id, int):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="check_suite.id missing.")

    batch = await aggregator.drain(suite_id)
    if not batch:
        return WebhookResponse(
            received=True,
            event=x_github_event,
            action="no_pending_uploads",
            check_suite_id=suite_id,
        )

    logger.info(
        "Check suite %d of %s completed (%s); publishing %d upload(s)",
        suite_id, full_name, event["conclusion"], len(batch),
    )
    background_tasks.add_task(publisher.publish, suite_id, batch)

    return WebhookResponse(
        received=True,
        event=x_github_event,
        action="publishing",
        check_suite_id=suite_id,
        queued_uploads=len(batch),
    )
