"""Pydantic schemas for GitHub integration endpoints."""

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    """Acknowledgement response for webhook events."""

    received: bool
    event: str
    action: str
    check_suite_id: int | None = None
    queued_uploads: int = 0
