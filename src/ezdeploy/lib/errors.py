"""Custom exception hierarchy for ezdeploy configuration and deployment runs."""

from __future__ import annotations


class EzDeployError(Exception):
    """Base exception for all ezdeploy errors.

    All ezdeploy-specific exceptions inherit from this class, enabling
    centralized exception handling in the CLI.
    """

    pass


class ConfigError(EzDeployError):
    """Exception raised for configuration errors.

    Raised when the config file cannot be read, parsed, or validated. When
    several fields are wrong at once, every problem is listed in ``fields``
    and in the message so the operator can fix them in one pass.

    Attributes:
        field: The configuration field that caused the error (first one
            when several are reported)
        message: Human-readable error message describing the issue
        fields: Every offending field name
    """

    def __init__(
        self, field: str, message: str, fields: list[str] | None = None
    ) -> None:
        """Initialize ConfigError with field and message.

        Args:
            field: Configuration field name where error occurred
            message: Descriptive error message
            fields: All offending fields when more than one is reported
        """
        self.field = field
        self.message = message
        self.fields = fields or [field]
        super().__init__(f"Configuration error in '{field}': {message}")


class ConnectivityError(EzDeployError):
    """Exception raised when the target server cannot be reached over SSH.

    Attributes:
        host: Host that could not be reached
        attempts: Number of connection attempts made
    """

    def __init__(
        self, host: str, attempts: int, original_error: Exception | None = None
    ) -> None:
        """Create a connectivity error with the host and attempt count."""
        self.host = host
        self.attempts = attempts
        self.original_error = original_error
        message = f"Could not connect to {host} after {attempts} attempt(s)"
        if original_error is not None:
            message += f": {original_error}"
        super().__init__(message)


class RemoteCommandError(EzDeployError):
    """Exception raised when a remote command exits with a non-zero status.

    Attributes:
        command: The command (or script summary) that was executed
        exit_code: Remote exit status
        stdout: Captured standard output
        stderr: Captured standard error
    """

    def __init__(
        self, command: str, exit_code: int, stdout: str = "", stderr: str = ""
    ) -> None:
        """Create a remote command error carrying the captured output."""
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = stderr.strip() or stdout.strip()
        message = f"Remote command failed with exit code {exit_code}: {command}"
        if detail:
            message += f"\n{detail}"
        super().__init__(message)


class AuthenticationError(EzDeployError):
    """Exception raised when the deploy key is not accepted by the Git host."""

    def __init__(self, host_alias: str, message: str) -> None:
        """Create an authentication error for a Git host alias."""
        self.host_alias = host_alias
        self.message = message
        super().__init__(f"Git authentication via '{host_alias}' failed: {message}")


class OperatorAbortError(EzDeployError):
    """Exception raised when the operator chooses to abort the run."""

    def __init__(self, message: str = "Deployment cancelled by operator") -> None:
        """Create an abort error."""
        self.message = message
        super().__init__(message)


class ToolMissingError(EzDeployError):
    """Exception raised when an expected binary is absent on the remote host.

    Bootstrap sub-steps treat this as a signal to install the tool rather
    than as a failure.

    Attributes:
        tool: Name of the missing binary
    """

    def __init__(self, tool: str, message: str | None = None) -> None:
        """Create a missing tool error."""
        self.tool = tool
        self.message = message or f"'{tool}' is not installed on the remote host"
        super().__init__(self.message)


class ResourceConflictError(EzDeployError):
    """Exception raised when infrastructure objects are locked or conflicting.

    Attributes:
        resource: Resource or lock that is in conflict
        message: Human-readable description
    """

    def __init__(self, resource: str, message: str) -> None:
        """Create a resource conflict error."""
        self.resource = resource
        self.message = message
        super().__init__(f"Conflict on '{resource}': {message}")


class ValidationError(EzDeployError):
    """Exception raised when post-deploy checks are not satisfied in time.

    Attributes:
        failures: Every check that did not pass
    """

    def __init__(self, failures: list[str], details: str = "") -> None:
        """Create a validation error listing the failed checks."""
        self.failures = failures
        self.details = details
        message = "Deployment validation failed:\n" + "\n".join(
            f"  - {failure}" for failure in failures
        )
        super().__init__(message)


class DeploymentError(EzDeployError):
    """Exception raised when a deployment operation fails.

    Attributes:
        operation: Operation that failed (build, clone, apply, ...)
        message: Human-readable error message
    """

    def __init__(self, operation: str, message: str) -> None:
        """Create a deployment error."""
        self.operation = operation
        self.message = message
        super().__init__(f"{operation} failed: {message}")


class PhaseFailedError(EzDeployError):
    """Exception raised by the orchestrator when a phase fails fatally.

    Wraps the underlying error so the CLI can attribute the failure to a
    phase and print the last captured remote output with a remediation hint.

    Attributes:
        phase: Name of the failed phase
        cause: The underlying exception
        output: Last captured remote stdout/stderr, if any
        remediation: Suggested manual remediation
    """

    def __init__(
        self,
        phase: str,
        cause: Exception,
        output: str = "",
        remediation: str = "",
    ) -> None:
        """Create a phase failure wrapping ``cause``."""
        self.phase = phase
        self.cause = cause
        self.output = output
        self.remediation = remediation
        super().__init__(f"Phase '{phase}' failed: {cause}")
