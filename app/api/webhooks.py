"""GitHub webhook receiver.

POST /api/webhooks/github — receives all GitHub App webhook events.
Strict order:
  1. Read raw body (before JSON parsing)
  2. Verify HMAC-SHA256 signature (FIRST operation, no exceptions)
  3. Parse payload
  4. Route event
  5. Return 200 immediately

NO database queries or outbound HTTP calls in this handler.  Store updates
and relay work are scheduled as background tasks that run after the
response has been sent.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request

from app.config import Settings, get_settings
from app.core.cache import get_redis
from app.core.security import verify_github_signature
from app.services.installations import apply_installation_event
from app.services.relay import parse_comment_trigger, parse_label_trigger, run_relay

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])

_INSTALLATION_ACTIONS = frozenset({"created", "deleted", "suspend", "unsuspend"})


@router.post("/github", status_code=200)
async def receive_github_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: str | None = Header(default=None),
    x_github_event: str = Header(default="unknown"),
    x_github_delivery: str = Header(default=""),
    config: Settings = Depends(get_settings),
    redis: Any = Depends(get_redis),
) -> dict[str, str]:
    """Receive and validate a GitHub webhook event.

    Returns:
        {"status": "accepted"} when work was scheduled,
        {"status": "ignored"} for events that need nothing.

    Raises:
        HTTPException(403): if signature is missing or invalid.
    """
    # Step 1: Read raw body BEFORE parsing — needed for HMAC verification.
    body = await request.body()

    # Step 2: Verify signature — FIRST OPERATION, NO EXCEPTIONS.
    verify_github_signature(body, config.github_webhook_secret, x_hub_signature_256)

    # Step 3: Parse the validated payload.
    payload: dict = json.loads(body)
    action: str = payload.get("action", "")

    logger.info(
        "Webhook received",
        extra={
            "event": x_github_event,
            "action": action,
            "delivery_id": x_github_delivery,
        },
    )

    # Step 4: Route by event type.
    if x_github_event == "installation" and action in _INSTALLATION_ACTIONS:
        background_tasks.add_task(apply_installation_event, action, payload)
        return {"status": "accepted"}

    if x_github_event == "issue_comment":
        trigger = parse_comment_trigger(payload, config)
    elif x_github_event == "issues":
        trigger = parse_label_trigger(payload, config)
    else:
        trigger = None

    if trigger is None:
        logger.debug(
            "Unhandled event — returning 200 (no-op)",
            extra={"event": x_github_event, "action": action},
        )
        return {"status": "ignored"}

    background_tasks.add_task(run_relay, trigger, config, redis=redis)
    return {"status": "accepted"}
