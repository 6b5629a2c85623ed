"""Tests for the issue-comment / issue-label relay.

Covers:
- Instruction extraction (case-insensitive, default instruction)
- Comment trigger parsing (created only, issues only, bots ignored)
- Label trigger parsing
- run_relay: eyes → job → rocket; error comments with remediation
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from sqlalchemy import select

from app.core.dispatcher import WorkflowDispatcher
from app.core.exceptions import WorkflowNotFoundError
from app.models.fix_job import FixJob, TriggerSource
from app.services.relay import (
    DEFAULT_INSTRUCTION,
    REMEDIATION_HINTS,
    RelayTrigger,
    extract_instruction,
    format_error_comment,
    parse_comment_trigger,
    parse_label_trigger,
    run_relay,
)
from conftest import create_installation, make_settings


def _comment_payload(body: str, action: str = "created", on_pr: bool = False, bot: bool = False) -> dict:
    issue = {"number": 17, "title": "Crash", "body": ""}
    if on_pr:
        issue["pull_request"] = {"url": "https://api.github.com/repos/a/b/pulls/17"}
    return {
        "action": action,
        "installation": {"id": 42},
        "repository": {"id": 900, "full_name": "a/b"},
        "issue": issue,
        "comment": {"id": 555, "body": body, "user": {"login": "dev", "type": "Bot" if bot else "User"}},
        "sender": {"login": "dev"},
    }


def _label_payload(label: str, title: str = "Login fails", body: str | None = "Steps: ...") -> dict:
    return {
        "action": "labeled",
        "installation": {"id": 42},
        "repository": {"id": 900, "full_name": "a/b"},
        "issue": {"number": 18, "title": title, "body": body},
        "label": {"name": label},
        "sender": {"login": "dev"},
    }


def _trigger(**overrides) -> RelayTrigger:
    values = {
        "installation_id": 42,
        "repository_full_name": "a/b",
        "repository_id": 900,
        "issue_number": 17,
        "instruction": "fix the crash on startup",
        "source": TriggerSource.COMMENT,
        "comment_id": 555,
    }
    values.update(overrides)
    return RelayTrigger(**values)


def _github() -> MagicMock:
    github = MagicMock()
    github.add_comment_reaction = AsyncMock()
    github.create_issue_comment = AsyncMock(return_value={"id": 1})
    return github


class TestExtractInstruction:
    def test_text_after_phrase(self) -> None:
        assert extract_instruction("@claude fix the login redirect", "@claude") == "fix the login redirect"

    def test_case_insensitive(self) -> None:
        assert extract_instruction("Hey @Claude  please fix it", "@claude") == "please fix it"

    def test_multiline_instruction(self) -> None:
        assert extract_instruction("@claude fix\nthe footer", "@claude") == "fix\nthe footer"

    def test_bare_mention_uses_default(self) -> None:
        assert extract_instruction("@claude", "@claude") == DEFAULT_INSTRUCTION

    def test_no_mention(self) -> None:
        assert extract_instruction("looks good to me", "@claude") is None

    def test_too_short_uses_default(self) -> None:
        assert extract_instruction("@claude fix", "@claude") == DEFAULT_INSTRUCTION


class TestParseTriggers:
    def test_comment_trigger(self) -> None:
        trigger = parse_comment_trigger(_comment_payload("@claude fix the crash"), make_settings())
        assert trigger is not None
        assert trigger.instruction == "fix the crash"
        assert trigger.comment_id == 555
        assert trigger.issue_number == 17
        assert trigger.source is TriggerSource.COMMENT

    def test_edited_comment_ignored(self) -> None:
        payload = _comment_payload("@claude fix", action="edited")
        assert parse_comment_trigger(payload, make_settings()) is None

    def test_pull_request_comment_ignored(self) -> None:
        payload = _comment_payload("@claude fix", on_pr=True)
        assert parse_comment_trigger(payload, make_settings()) is None

    def test_bot_comment_ignored(self) -> None:
        payload = _comment_payload("@claude fix", bot=True)
        assert parse_comment_trigger(payload, make_settings()) is None

    def test_custom_trigger_phrase(self) -> None:
        settings = make_settings(trigger_phrase="/fix")
        trigger = parse_comment_trigger(_comment_payload("/fix the header"), settings)
        assert trigger is not None and trigger.instruction == "the header"

    def test_label_trigger(self) -> None:
        trigger = parse_label_trigger(_label_payload("AI-Fix"), make_settings())
        assert trigger is not None
        assert trigger.instruction == "Login fails\n\nSteps: ..."
        assert trigger.comment_id is None
        assert trigger.source is TriggerSource.LABEL

    def test_label_without_body(self) -> None:
        trigger = parse_label_trigger(_label_payload("claude", body=None), make_settings())
        assert trigger.instruction == "Login fails"

    def test_short_title_uses_default(self) -> None:
        trigger = parse_label_trigger(_label_payload("claude", title="Bug", body=None), make_settings())
        assert trigger.instruction == DEFAULT_INSTRUCTION

    def test_other_label_ignored(self) -> None:
        assert parse_label_trigger(_label_payload("bug"), make_settings()) is None

    def test_long_issue_truncated(self) -> None:
        trigger = parse_label_trigger(_label_payload("claude", body="x" * 6000), make_settings())
        assert len(trigger.instruction) == 5000


class TestErrorComment:
    def test_includes_hint(self) -> None:
        text = format_error_comment("No token", "configure_token")
        assert "No token" in text
        assert REMEDIATION_HINTS["configure_token"] in text

    def test_unknown_action_has_no_hint(self) -> None:
        assert format_error_comment("Boom", None).endswith("Boom")


class TestRunRelay:
    @pytest.mark.asyncio
    async def test_success_reacts_and_creates_running_job(self, session_factory, tenant, settings) -> None:
        github = _github()
        dispatcher = WorkflowDispatcher(settings)
        dispatcher.dispatch = AsyncMock()

        outcome = await run_relay(_trigger(), settings, github=github, dispatcher=dispatcher)

        assert outcome is not None and outcome.ok
        reactions = [c.args[2] for c in github.add_comment_reaction.await_args_list]
        assert reactions == ["eyes", "rocket"]
        github.create_issue_comment.assert_not_awaited()

        async with session_factory() as session:
            job = (await session.execute(select(FixJob))).scalar_one()
        user, _ = tenant
        assert job.status == "running"
        assert job.trigger_source == "comment"
        assert job.source_issue_number == 17
        assert job.source_comment_id == 555
        assert job.user_id == user.id
        assert job.problem_statement == "fix the crash on startup"

    @pytest.mark.asyncio
    async def test_unknown_installation_posts_install_hint(self, session_factory, settings) -> None:
        github = _github()
        outcome = await run_relay(_trigger(), settings, github=github)

        assert outcome is None
        body = github.create_issue_comment.await_args.args[2]
        assert REMEDIATION_HINTS["install_app"] in body

    @pytest.mark.asyncio
    async def test_missing_token_posts_configure_hint(self, db, session_factory, settings) -> None:
        await create_installation(db, owner=None)
        await db.commit()
        github = _github()

        outcome = await run_relay(_trigger(), settings, github=github)

        assert outcome is None
        body = github.create_issue_comment.await_args.args[2]
        assert REMEDIATION_HINTS["configure_token"] in body
        async with session_factory() as session:
            assert (await session.execute(select(FixJob))).first() is None

    @pytest.mark.asyncio
    async def test_dispatch_failure_posts_comment_and_fails_job(
        self, session_factory, tenant, settings
    ) -> None:
        github = _github()
        dispatcher = WorkflowDispatcher(settings)
        dispatcher.dispatch = AsyncMock(side_effect=WorkflowNotFoundError("workflow missing"))

        outcome = await run_relay(_trigger(), settings, github=github, dispatcher=dispatcher)

        assert outcome is not None and not outcome.ok
        reactions = [c.args[2] for c in github.add_comment_reaction.await_args_list]
        assert reactions == ["eyes"]
        body = github.create_issue_comment.await_args.args[2]
        assert "workflow missing" in body
        assert REMEDIATION_HINTS["check_worker_repo"] in body

        async with session_factory() as session:
            job = (await session.execute(select(FixJob))).scalar_one()
        assert job.status == "failed"

    @pytest.mark.asyncio
    async def test_label_trigger_skips_reactions(self, session_factory, tenant, settings) -> None:
        github = _github()
        dispatcher = WorkflowDispatcher(settings)
        dispatcher.dispatch = AsyncMock()

        trigger = _trigger(comment_id=None, source=TriggerSource.LABEL)
        outcome = await run_relay(trigger, settings, github=github, dispatcher=dispatcher)

        assert outcome.ok
        github.add_comment_reaction.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reaction_network_error_does_not_stop_dispatch(
        self, session_factory, tenant, settings
    ) -> None:
        github = _github()
        github.add_comment_reaction = AsyncMock(side_effect=httpx.ConnectError("connection reset"))
        dispatcher = WorkflowDispatcher(settings)
        dispatcher.dispatch = AsyncMock()

        outcome = await run_relay(_trigger(), settings, github=github, dispatcher=dispatcher)

        assert outcome is not None and outcome.ok
        dispatcher.dispatch.assert_awaited_once()
        assert github.add_comment_reaction.await_count == 2
        async with session_factory() as session:
            job = (await session.execute(select(FixJob))).scalar_one()
        assert job.status == "running"

    @pytest.mark.asyncio
    async def test_failure_comment_network_error_is_logged(self, session_factory, settings) -> None:
        github = _github()
        github.create_issue_comment = AsyncMock(side_effect=httpx.ReadTimeout("timed out"))

        outcome = await run_relay(_trigger(), settings, github=github)

        assert outcome is None
        github.create_issue_comment.assert_awaited_once()
