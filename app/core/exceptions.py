"""Domain-specific exceptions for FixRelay.

Every external integration failure should raise one of these exceptions
so that calling code can handle failures precisely. Never raise bare
Exception or use generic error types.

``FixRelayError`` subclasses are rendered by the handler registered in
``app.main`` as ``{"error", "message", "action"}`` with their status code.
"""

from __future__ import annotations


# =============================================================================
# Encryption
# =============================================================================


class EncryptionError(Exception):
    """Base exception for secret encryption failures."""


class EncryptionKeyMissingError(EncryptionError):
    """ENCRYPTION_KEY is not configured."""


class SecretDecryptionError(EncryptionError):
    """Authentication tag did not verify: ciphertext, IV or tag was altered."""


# =============================================================================
# GitHub API
# =============================================================================


class GitHubError(Exception):
    """Base exception for all GitHub API failures."""


class GitHubAuthError(GitHubError):
    """App JWT is invalid — check GITHUB_APP_PRIVATE_KEY_PATH and GITHUB_APP_ID."""


class GitHubInstallationNotFoundError(GitHubError):
    """Installation ID does not exist — may have been uninstalled."""


class GitHubRateLimitError(GitHubError):
    """GitHub API rate limit exceeded for this installation."""

    def __init__(self, message: str = "Rate limit exceeded", reset_at: str = "") -> None:
        self.reset_at = reset_at
        super().__init__(message)


class GitHubAPIError(GitHubError):
    """Generic GitHub API error with status code context."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        self.status_code = status_code
        super().__init__(message)


# =============================================================================
# Service errors (rendered to API callers)
# =============================================================================


class FixRelayError(Exception):
    """Base for errors surfaced verbatim to the API caller."""

    status_code: int = 400
    error: str = "Bad request"
    action: str | None = None

    def __init__(self, message: str = "", *, action: str | None = None) -> None:
        self.message = message or self.error
        if action is not None:
            self.action = action
        super().__init__(self.message)


class ValidationFailedError(FixRelayError):
    status_code = 400
    error = "Validation failed"


class NotAuthenticatedError(FixRelayError):
    status_code = 401
    error = "Unauthorized"


class ForbiddenError(FixRelayError):
    status_code = 403
    error = "Forbidden"


class InstallationNotFoundError(FixRelayError):
    status_code = 404
    error = "Installation not found"
    action = "install_app"


class JobNotFoundError(FixRelayError):
    status_code = 404
    error = "Job not found"


class CredentialNotConfiguredError(FixRelayError):
    status_code = 400
    error = "Token not configured"
    action = "configure_token"


class CredentialInactiveError(FixRelayError):
    status_code = 400
    error = "Token is not active"
    action = "configure_token"


class ConfigurationError(FixRelayError):
    """A required server-side secret or credential is not configured."""

    status_code = 500
    error = "Server configuration error"
    action = "configure_server"


class UpstreamServiceError(FixRelayError):
    """GitHub or the agent provider answered with an unexpected error."""

    status_code = 502
    error = "Upstream service error"


class JobStateConflictError(FixRelayError):
    """Requested transition is not allowed from the job's current status."""

    status_code = 409
    error = "Job state conflict"


# =============================================================================
# Workflow dispatch
# =============================================================================


class WorkflowDispatchError(FixRelayError):
    """workflow_dispatch call to the worker repository failed."""

    status_code = 502
    error = "Workflow dispatch failed"
    action = "retry"

    def __init__(
        self,
        message: str = "",
        *,
        upstream_status: int = 0,
        action: str | None = None,
    ) -> None:
        self.upstream_status = upstream_status
        super().__init__(message, action=action)


class WorkflowNotFoundError(WorkflowDispatchError):
    """404: worker repository or workflow file does not exist, or the PAT cannot see it."""

    error = "Worker workflow not found"
    action = "check_worker_repo"


class WorkflowForbiddenError(WorkflowDispatchError):
    """403: the PAT lacks the ``actions:write`` permission on the worker repository."""

    error = "Worker workflow dispatch forbidden"
    action = "check_pat_permissions"


class WorkflowInputError(WorkflowDispatchError):
    """422: the workflow rejected the inputs or the ref does not exist."""

    error = "Worker workflow rejected inputs"
    action = "check_workflow_inputs"
