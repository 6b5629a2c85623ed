"""Issue-comment and issue-label relay.

Turns a mention such as ``@claude fix the login redirect`` (or a trigger
label on an issue) into a fix job for the installation the event came from,
then dispatches it exactly like a dashboard submission.  Progress is
reported back on the issue: ``eyes`` when picked up, ``rocket`` once the
worker is running, an explanatory comment when anything fails.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx
from jose.exceptions import JOSEError

from app.config import Settings
from app.core.dispatcher import WorkflowDispatcher
from app.core.exceptions import FixRelayError, GitHubError, InstallationNotFoundError
from app.core.github_client import GitHubClient
from app.models.database import session_scope
from app.models.fix_job import TriggerSource
from app.models.tenant import Installation
from app.services.jobs import (
    MAX_PROBLEM_LENGTH,
    MIN_PROBLEM_LENGTH,
    DispatchOutcome,
    create_job,
    dispatch_job,
)

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTION = "fix this issue"

# Reactions and comments are best-effort; none of these may abort a relay.
_GITHUB_CALL_ERRORS = (GitHubError, httpx.HTTPError, JOSEError)

REMEDIATION_HINTS: dict[str, str] = {
    "install_app": "Install the GitHub App on this account, then mention me again.",
    "configure_token": (
        "An admin of this installation needs to save a valid agent token in the "
        "dashboard settings."
    ),
    "configure_server": "The service is missing configuration; please contact its operator.",
    "check_worker_repo": "The worker repository or workflow could not be found.",
    "check_pat_permissions": "The service token is not allowed to start the worker workflow.",
    "check_workflow_inputs": "The worker workflow rejected this request.",
    "retry": "Please try again in a few minutes.",
}


@dataclass(frozen=True)
class RelayTrigger:
    """A parsed, actionable comment or label event."""

    installation_id: int
    repository_full_name: str
    repository_id: int
    issue_number: int
    instruction: str
    source: TriggerSource
    comment_id: int | None = None
    sender: str = ""


def extract_instruction(body: str, phrase: str) -> str | None:
    """Return the text after ``phrase`` in ``body``, or None if not mentioned.

    Matching is case-insensitive.  A bare mention, or text too short to be a
    problem statement, yields ``DEFAULT_INSTRUCTION``.
    """
    if not phrase or phrase.lower() not in body.lower():
        return None
    match = re.search(re.escape(phrase) + r"\s+([\s\S]*)", body, re.IGNORECASE)
    instruction = match.group(1).strip() if match else ""
    return _usable_instruction(instruction)


def _usable_instruction(text: str) -> str:
    text = text.strip()
    if len(text) < MIN_PROBLEM_LENGTH:
        return DEFAULT_INSTRUCTION
    return text[:MAX_PROBLEM_LENGTH]


def _base_fields(payload: dict[str, Any]) -> dict[str, Any] | None:
    installation = payload.get("installation") or {}
    repository = payload.get("repository") or {}
    issue = payload.get("issue") or {}
    if not installation.get("id") or not repository.get("full_name") or not issue.get("number"):
        return None
    return {
        "installation_id": int(installation["id"]),
        "repository_full_name": repository["full_name"],
        "repository_id": int(repository.get("id") or 0),
        "issue_number": int(issue["number"]),
        "sender": (payload.get("sender") or {}).get("login", ""),
    }


def parse_comment_trigger(payload: dict[str, Any], settings: Settings) -> RelayTrigger | None:
    """``issue_comment.created`` on an issue (not a PR) mentioning the trigger phrase."""
    if payload.get("action") != "created":
        return None
    issue = payload.get("issue") or {}
    if issue.get("pull_request"):
        return None
    comment = payload.get("comment") or {}
    if (comment.get("user") or {}).get("type") == "Bot":
        return None

    instruction = extract_instruction(comment.get("body") or "", settings.trigger_phrase)
    fields = _base_fields(payload)
    if instruction is None or fields is None:
        return None
    return RelayTrigger(
        instruction=instruction,
        source=TriggerSource.COMMENT,
        comment_id=comment.get("id"),
        **fields,
    )


def parse_label_trigger(payload: dict[str, Any], settings: Settings) -> RelayTrigger | None:
    """``issues.labeled`` with one of the configured trigger labels."""
    if payload.get("action") != "labeled":
        return None
    label = ((payload.get("label") or {}).get("name") or "").lower()
    if label not in settings.trigger_label_set:
        return None
    fields = _base_fields(payload)
    if fields is None:
        return None

    issue = payload["issue"]
    instruction = f"{issue.get('title') or ''}\n\n{issue.get('body') or ''}".strip()
    return RelayTrigger(
        instruction=_usable_instruction(instruction),
        source=TriggerSource.LABEL,
        **fields,
    )


def format_error_comment(message: str, action: str | None) -> str:
    lines = [":x: **Could not start the fix.**", "", message]
    hint = REMEDIATION_HINTS.get(action or "")
    if hint:
        lines += ["", hint]
    return "\n".join(lines)


async def _react(github: GitHubClient, trigger: RelayTrigger, content: str) -> None:
    if trigger.comment_id is None:
        return
    try:
        await github.add_comment_reaction(trigger.repository_full_name, trigger.comment_id, content)
    except _GITHUB_CALL_ERRORS as exc:
        logger.warning(
            "Could not add reaction",
            extra={"content": content, "repo": trigger.repository_full_name, "error": str(exc)},
        )


async def _report_failure(
    github: GitHubClient, trigger: RelayTrigger, message: str, action: str | None
) -> None:
    try:
        await github.create_issue_comment(
            trigger.repository_full_name,
            trigger.issue_number,
            format_error_comment(message, action),
        )
    except _GITHUB_CALL_ERRORS as exc:
        logger.error(
            "Could not post failure comment",
            extra={
                "repo": trigger.repository_full_name,
                "issue_number": trigger.issue_number,
                "error": str(exc),
            },
        )


async def run_relay(
    trigger: RelayTrigger,
    settings: Settings,
    *,
    redis: Any = None,
    github: GitHubClient | None = None,
    dispatcher: WorkflowDispatcher | None = None,
) -> DispatchOutcome | None:
    """Create and dispatch a job for a trigger, reporting back on the issue.

    Returns the dispatch outcome, or None when no job could be created.
    """
    github = github or GitHubClient(trigger.installation_id, settings, redis)
    logger.info(
        "Relay trigger received",
        extra={
            "installation_id": trigger.installation_id,
            "repo": trigger.repository_full_name,
            "issue_number": trigger.issue_number,
            "source": trigger.source.value,
            "sender": trigger.sender,
        },
    )
    await _react(github, trigger, "eyes")

    try:
        async with session_scope() as db:
            installation = await db.get(Installation, trigger.installation_id)
            if installation is None:
                raise InstallationNotFoundError(
                    "This repository's GitHub App installation is not registered."
                )
            job = await create_job(
                db,
                installation=installation,
                user_id=installation.user_id,
                repository_id=trigger.repository_id,
                repository_full_name=trigger.repository_full_name,
                problem_statement=trigger.instruction,
                trigger_source=trigger.source,
                source_issue_number=trigger.issue_number,
                source_comment_id=trigger.comment_id,
            )
            job_id = job.id
    except FixRelayError as exc:
        logger.warning(
            "Relay trigger rejected",
            extra={"installation_id": trigger.installation_id, "reason": exc.message},
        )
        await _report_failure(github, trigger, exc.message, exc.action)
        return None

    outcome = await dispatch_job(job_id, settings, dispatcher=dispatcher)
    if outcome.ok:
        await _react(github, trigger, "rocket")
    else:
        await _report_failure(github, trigger, outcome.error or "Dispatch failed", outcome.action)
    return outcome
