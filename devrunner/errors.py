"""
DevRunner Error Hierarchy

Base error and specific error types for all DevRunner components.
Errors carry metadata for structured logging.
"""

from typing import Any, Dict, Optional


class DevRunnerError(RuntimeError):
    """
    Base error for DevRunner components. Carries metadata for structured logging.

    Attributes:
        category: Error category for classification (e.g., "runtime", "validation")
        retryable: Whether the operation can be retried
        metadata: Additional context for logging and debugging
    """

    category: str = "runtime"
    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.metadata = metadata or {}
        if retryable is not None:
            self.retryable = retryable


# Validation Errors
class ValidationError(DevRunnerError):
    """Raised when input validation fails."""

    category = "validation"
    retryable = False


# Configuration Errors
class ConfigError(DevRunnerError):
    """Raised when configuration is invalid or missing."""

    category = "config"
    retryable = False


class SecretDecryptionError(ConfigError):
    """Raised when a stored token cannot be decrypted with the configured key."""


# Workspace Errors
class WorkspaceError(DevRunnerError):
    """Base class for sandbox/workspace errors."""

    category = "workspace"


class InvalidWorkspacePathError(WorkspaceError, ValidationError):
    """Raised when a generated file path is absolute, contains '..' or a NUL byte."""

    category = "workspace"
    retryable = False

    def __init__(self, path: str) -> None:
        super().__init__(f"INVALID_WORKSPACE_PATH:{path}", metadata={"path": path})
        self.path = path


class WorkspacePathEscapeError(WorkspaceError, ValidationError):
    """Raised when a resolved path points outside the sandbox root."""

    category = "workspace"
    retryable = False

    def __init__(self, path: str) -> None:
        super().__init__(f"WORKSPACE_PATH_ESCAPE:{path}", metadata={"path": path})
        self.path = path


# Agent Errors
class AgentError(DevRunnerError):
    """Base class for agent contract errors."""

    category = "agent"

    def __init__(self, code: str, agent_name: str, detail: Optional[str] = None) -> None:
        message = f"{code}:{agent_name}" + (f":{detail}" if detail else "")
        super().__init__(message, metadata={"agent_name": agent_name, "code": code})
        self.code = code
        self.agent_name = agent_name
        self.detail = detail


class AgentResponseTruncatedError(AgentError):
    """The model stopped on its own token limit, or the JSON had to be repaired."""

    def __init__(self, agent_name: str) -> None:
        super().__init__("AGENT_RESPONSE_TRUNCATED", agent_name)


class AgentResponseInvalidJsonError(AgentError):
    """No parseable JSON object in the model response."""

    def __init__(self, agent_name: str) -> None:
        super().__init__("AGENT_RESPONSE_INVALID_JSON", agent_name)


class AgentContractInvalidError(AgentError):
    """JSON parsed but does not match the agent's output schema."""

    def __init__(self, agent_name: str, path: str, reason: str) -> None:
        super().__init__("AGENT_CONTRACT_INVALID", agent_name, f"{path}:{reason}")
        self.path = path
        self.reason = reason


class AgentModelRequestError(AgentError):
    """The model API call itself failed (transport error or non-2xx)."""

    def __init__(self, agent_name: str, detail: str, *, status_code: Optional[int] = None) -> None:
        super().__init__("AGENT_MODEL_REQUEST_FAILED", agent_name, detail)
        self.metadata["status_code"] = status_code
        self.status_code = status_code


class AgentRuntimeDisabledError(AgentError):
    """No model runtime and no deterministic fallback available."""

    retryable = False

    def __init__(self, agent_name: str) -> None:
        super().__init__("AGENT_RUNTIME_DISABLED", agent_name)


# Quality Errors
class QualityError(DevRunnerError):
    """Base class for quality gate errors."""

    category = "quality"


class CommandNotAllowedError(QualityError):
    """Raised before spawning when a gate command is not on the allow-list."""

    retryable = False

    def __init__(self, command: list) -> None:
        super().__init__(
            f"Command not allowed for autonomous gate execution: {' '.join(command)}",
            metadata={"command": list(command)},
        )
        self.command = list(command)


# Git Errors
class GitCommandError(DevRunnerError):
    """Raised when git commands fail."""

    category = "git"


class ReleaseError(GitCommandError):
    """
    Raised when a step of the git release fails.

    Attributes:
        phase: Always "release"
        step: The failing step (clone, checkout, write, commit, push)
        summary: Short machine-friendly failure cause
        details: Masked diagnostic output (never contains credentials)
    """

    category = "release"
    retryable = False

    def __init__(self, step: str, summary: str, details: Optional[str] = None) -> None:
        super().__init__(
            f"phase=release step={step}: {summary}",
            metadata={"phase": "release", "step": step, "summary": summary},
        )
        self.phase = "release"
        self.step = step
        self.summary = summary
        self.details = details


# External service errors
class ExternalServiceError(DevRunnerError):
    """Base class for hosting API failures."""

    category = "external"


class GitOpsError(ExternalServiceError):
    """
    Raised when a project cannot be released (not connected, token missing, bad mode).

    The message is the stable code, optionally followed by ":detail".
    """

    category = "gitops"
    retryable = False

    def __init__(self, code: str, detail: Optional[str] = None) -> None:
        super().__init__(f"{code}:{detail}" if detail else code, metadata={"code": code})
        self.code = code


class GitHubApiError(ExternalServiceError):
    """Raised when the GitHub REST API returns an error."""

    category = "github"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message, metadata={"status_code": status_code})
        self.status_code = status_code


class DeployApiError(ExternalServiceError):
    """Raised when the deploy hosting API returns an error."""

    category = "deploy"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message, metadata={"status_code": status_code})
        self.status_code = status_code


# Orchestration Errors
class OrchestrationError(DevRunnerError):
    """Base class for orchestration-related errors."""

    category = "orchestration"


class RunControlError(OrchestrationError):
    """
    Raised by run control operations.

    Attributes:
        code: Stable error code (e.g. RUN_NOT_RETRYABLE)
    """

    retryable = False

    def __init__(self, code: str, *, metadata: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(code, metadata=metadata)
        self.code = code


# Storage Errors
class StorageError(DevRunnerError):
    """Raised when database operations fail."""

    category = "storage"


class EntityNotFoundError(StorageError, RunControlError):
    """Raised when a requested entity is not found in storage."""

    category = "storage"
    retryable = False

    def __init__(self, code: str, *, metadata: Optional[Dict[str, Any]] = None) -> None:
        RunControlError.__init__(self, code, metadata=metadata)
