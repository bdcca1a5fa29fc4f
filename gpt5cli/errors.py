"""Exception hierarchy for gpt5cli."""


class AgentError(Exception):
    """Raised for reportable runtime failures. The CLI prints one line and exits 1."""


class ConfigError(AgentError):
    """Raised for invalid configuration (bad env value, missing user input, etc.)."""


class ValidationError(AgentError):
    """Raised for a bad index or argument supplied by the user."""


class HistoryCorruptionError(AgentError):
    """Raised when the history file cannot be parsed or fails validation."""


class WorkspaceViolationError(AgentError):
    """Raised when a path resolves outside the workspace root."""


class ToolExecutionError(AgentError):
    """Raised by tool handlers. ToolRuntime turns it into a failed result."""


class IterationCapReached(AgentError):
    """Raised by the agent loop when the iteration cap is hit under the "throw" policy."""


class ExternalCommandError(AgentError):
    """Raised when a finalize action's command cannot be spawned or exits non-zero."""
