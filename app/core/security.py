"""HMAC-SHA256 request verification.

Every incoming GitHub webhook is cryptographically verified BEFORE any
other processing, and every workflow callback must present the per-job
token that was handed to the worker at dispatch time.  Both use
hmac.compare_digest() for constant-time comparison to prevent timing
attacks.
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from fastapi import HTTPException

logger = logging.getLogger(__name__)


def verify_github_signature(
    body: bytes,
    secret: str,
    signature_header: str | None,
) -> None:
    """Verify HMAC-SHA256 signature from a GitHub webhook.

    GitHub sends: X-Hub-Signature-256: sha256=<hex_digest>
    We compute:   sha256=HMAC-SHA256(secret, body)

    Args:
        body: Raw request body bytes.
        secret: The shared webhook secret.
        signature_header: Value of the ``X-Hub-Signature-256`` header.

    Raises:
        HTTPException(403): If the signature is missing, malformed, or invalid.
    """
    if not signature_header:
        logger.warning("Webhook rejected: missing X-Hub-Signature-256 header")
        raise HTTPException(
            status_code=403,
            detail="Missing X-Hub-Signature-256 header",
        )

    if not signature_header.startswith("sha256="):
        logger.warning("Webhook rejected: malformed signature (no sha256= prefix)")
        raise HTTPException(
            status_code=403,
            detail="Invalid signature format — expected sha256= prefix",
        )

    received_signature = signature_header[7:]  # strip "sha256=" prefix

    expected_signature = hmac.new(
        key=secret.encode("utf-8"),
        msg=body,
        digestmod=hashlib.sha256,
    ).hexdigest()

    if not hmac.compare_digest(expected_signature, received_signature):
        logger.warning("Webhook rejected: invalid HMAC signature")
        raise HTTPException(
            status_code=403,
            detail="Invalid webhook signature",
        )


def sign_job_token(job_id: str, secret: str) -> str:
    """Return the callback token bound to ``job_id``.

    The worker receives this token as a workflow input and echoes it back in
    the ``X-Callback-Token`` header, so a callback can only update the job it
    was dispatched for.
    """
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=f"job:{job_id}".encode("utf-8"),
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_job_token(job_id: str, secret: str, token_header: str | None) -> None:
    """Verify the ``X-Callback-Token`` header for a workflow callback.

    Raises:
        HTTPException(401): If the token is missing, the callback secret is
            not configured, or the token does not match ``job_id``.
    """
    if not secret:
        logger.error("Callback rejected: CALLBACK_SECRET is not configured")
        raise HTTPException(status_code=401, detail="Callback authentication unavailable")

    if not token_header:
        logger.warning("Callback rejected: missing X-Callback-Token", extra={"job_id": job_id})
        raise HTTPException(status_code=401, detail="Missing X-Callback-Token header")

    if not hmac.compare_digest(sign_job_token(job_id, secret), token_header):
        logger.warning("Callback rejected: token does not match job", extra={"job_id": job_id})
        raise HTTPException(status_code=401, detail="Invalid callback token")


def verify_shared_secret(expected: str, provided: str | None) -> bool:
    """Constant-time check of a static shared-secret header.

    An empty ``expected`` secret disables the header entirely.
    """
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected, provided)
