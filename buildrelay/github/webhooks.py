"""GitHub webhook verification and event parsing.

Each repository in the relay config has its own webhook secret
(``gh_notify_secret``); it must never be logged or exposed.

GitHub signs the raw body with HMAC-SHA256 in ``X-Hub-Signature-256``
and, for older hooks, HMAC-SHA1 in ``X-Hub-Signature``. The SHA-256
header is preferred whenever present.
https://docs.github.com/en/webhooks/using-webhooks/validating-webhook-deliveries
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Optional

from buildrelay.core.config import RelayConfig


class SignatureMismatchError(Exception):
    """The webhook signature does not match the repository's secret."""


_ALGORITHMS = {"sha256": hashlib.sha256, "sha1": hashlib.sha1}


def compute_signature(payload_body: bytes, secret: str, algorithm: str = "sha256") -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_body, _ALGORITHMS[algorithm]).hexdigest()
    return f"{algorithm}={digest}"


def verify_webhook_signature(payload_body: bytes, signature_header: str, secret: str) -> bool:
    """Verify a ``sha256=...`` or ``sha1=...`` signature over the raw body.

    Returns:
        True if the signature is valid, False otherwise.
    """
    if not secret:
        raise ValueError("webhook secret not configured")

    if not signature_header or "=" not in signature_header:
        return False

    algorithm = signature_header.split("=", 1)[0]
    if algorithm not in _ALGORITHMS:
        return False

    expected_signature = compute_signature(payload_body, secret, algorithm)

    # Constant-time comparison to prevent timing attacks
    return hmac.compare_digest(expected_signature, signature_header)


def require_valid_signature(
    payload_body: bytes,
    payload: dict,
    config: RelayConfig,
    signature_256: str = "",
    signature_sha1: str = "",
) -> str:
    """Authenticate a webhook delivery against its repository's secret.

    Returns the repository full name.

    Raises:
        SignatureMismatchError: Unknown repository, no signature, or a
            signature that doesn't match.
    """
    full_name = repository_full_name(payload)
    repository = config.repositories.get(full_name) if full_name else None
    if repository is None:
        raise SignatureMismatchError(f"no webhook secret for repository {full_name!r}")

    signature = signature_256 or signature_sha1
    if not verify_webhook_signature(payload_body, signature, repository.gh_notify_secret):
        raise SignatureMismatchError(f"signature mismatch for {full_name}")
    return full_name


def repository_full_name(payload: dict) -> Optional[str]:
    repository = payload.get("repository") or {}
    return repository.get("full_name") if isinstance(repository, dict) else None


def parse_check_suite_event(payload: dict) -> dict:
    """Extract the fields the relay uses from a check_suite event."""
    check_suite = payload.get("check_suite") or {}
    return {
        "action": payload.get("action", ""),
        "check_suite_id": check_suite.get("id"),
        "head_sha": check_suite.get("head_sha"),
        "conclusion": check_suite.get("conclusion"),
        "repository": repository_full_name(payload),
    }
