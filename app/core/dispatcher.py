"""workflow_dispatch client for the worker repository.

The fix itself runs in a GitHub Actions workflow in a separate worker
repository; this module only fires that workflow and maps GitHub's answer
onto the ``WorkflowDispatchError`` family.  There is no retry: every
failure is terminal for the job and surfaced to the user.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from app.config import Settings
from app.core.exceptions import (
    WorkflowDispatchError,
    WorkflowForbiddenError,
    WorkflowInputError,
    WorkflowNotFoundError,
)
from app.core.github_client import GITHUB_API_BASE, GITHUB_API_VERSION

logger = logging.getLogger(__name__)


@dataclass
class DispatchRequest:
    """Everything the worker workflow needs to run one fix job."""

    job_id: str
    installation_id: int
    target_repo: str
    problem_statement: str
    api_key: str
    complexity: str = "medium"
    callback_token: str = ""
    user_rca: str | None = None
    regeneration: bool = False
    branch_name: str | None = None
    image_urls: list[str] = field(default_factory=list)

    def to_inputs(self) -> dict[str, str]:
        """workflow_dispatch inputs; GitHub only accepts string values."""
        inputs = {
            "target_repo": self.target_repo,
            "problem_statement": self.problem_statement,
            "installation_id": str(self.installation_id),
            "job_id": self.job_id,
            "api_key": self.api_key,
            "complexity": self.complexity,
            "callback_token": self.callback_token,
        }
        if self.user_rca:
            inputs["user_rca"] = self.user_rca
        if self.regeneration:
            inputs["regeneration"] = "true"
        if self.branch_name:
            inputs["branch_name"] = self.branch_name
        if self.image_urls:
            inputs["image_urls"] = ",".join(self.image_urls)
        return inputs


class WorkflowDispatcher:
    """Fires ``workflow_dispatch`` on the configured worker workflow with a PAT."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self._transport = transport

    @property
    def dispatch_url(self) -> str:
        s = self.settings
        return (
            f"{GITHUB_API_BASE}/repos/{s.worker_repo_owner}/{s.worker_repo_name}"
            f"/actions/workflows/{s.worker_workflow_file}/dispatches"
        )

    async def dispatch(self, request: DispatchRequest) -> None:
        """Trigger the worker workflow for one job.

        Raises:
            WorkflowNotFoundError: 404 from GitHub.
            WorkflowForbiddenError: 403 from GitHub.
            WorkflowInputError: 422 from GitHub.
            WorkflowDispatchError: Missing configuration, network failure,
                or any other non-204 response.
        """
        if not self.settings.github_pat or not self.settings.worker_repo_owner:
            raise WorkflowDispatchError(
                "GITHUB_PAT and WORKER_REPO_OWNER must be configured to dispatch fixes",
                action="configure_server",
            )

        body: dict[str, Any] = {"ref": self.settings.worker_ref, "inputs": request.to_inputs()}
        headers = {
            "Authorization": f"Bearer {self.settings.github_pat}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

        try:
            async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
                response = await client.post(self.dispatch_url, headers=headers, json=body)
        except httpx.HTTPError as exc:
            raise WorkflowDispatchError(f"Could not reach GitHub: {exc}") from exc

        if response.status_code in (200, 204):
            logger.info(
                "Worker workflow dispatched",
                extra={"job_id": request.job_id, "target_repo": request.target_repo},
            )
            return

        detail = response.text[:200]
        status = response.status_code
        logger.warning(
            "Worker workflow dispatch failed",
            extra={"job_id": request.job_id, "status_code": status},
        )

        if status == 404:
            raise WorkflowNotFoundError(
                f"Workflow {self.settings.worker_workflow_file} not found in "
                f"{self.settings.worker_repo_owner}/{self.settings.worker_repo_name}",
                upstream_status=status,
            )
        if status == 403:
            raise WorkflowForbiddenError(
                "The configured PAT may not dispatch workflows in the worker repository",
                upstream_status=status,
            )
        if status == 422:
            raise WorkflowInputError(
                f"GitHub rejected the workflow inputs: {detail}",
                upstream_status=status,
            )
        raise WorkflowDispatchError(
            f"Failed to trigger workflow: {status} {detail}",
            upstream_status=status,
        )
