"""
Custom exceptions for Lampstack.
"""

from typing import List, Optional


class LampstackError(Exception):
    """Base exception for all Lampstack errors."""

    pass


class ConfigurationError(LampstackError):
    """Raised when there's an issue with configuration loading or parsing."""

    pass


class ValidationError(LampstackError):
    """Raised when the desired state is internally inconsistent."""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        if len(self.problems) == 1:
            message = f"Invalid desired state: {self.problems[0]}"
        else:
            lines = "\n".join(f"  - {p}" for p in self.problems)
            message = f"Invalid desired state ({len(self.problems)} problems):\n{lines}"
        super().__init__(message)


class TerraformCommandError(LampstackError):
    """Raised when a Terraform command fails."""

    def __init__(self, message: str, command: str = None, stderr: str = None):
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class ReconciliationError(LampstackError):
    """Raised when Terraform could not converge the declared resources."""

    def __init__(self, message: str, command: str = None, stderr: str = None):
        super().__init__(message)
        self.command = command
        self.stderr = stderr


class StateLockError(LampstackError):
    """Raised when another process holds the workspace state lock."""

    pass


class SecretError(LampstackError):
    """Raised when a declared secret cannot be resolved."""

    pass


class BootstrapStepError(LampstackError):
    """Raised when a provisioning step fails and halts the sequence."""

    def __init__(
        self,
        step_index: int,
        step: str,
        reason: str,
        exit_code: Optional[int] = None,
    ):
        super().__init__(f"Step {step_index} ({step}) failed: {reason}")
        self.step_index = step_index
        self.step = step
        self.reason = reason
        self.exit_code = exit_code


class ReadinessTimeoutError(LampstackError):
    """Raised when a readiness gate did not pass within its bound."""

    def __init__(self, target: str, attempts: int, waited: float, step_index: int = None):
        super().__init__(
            f"{target} not ready after {attempts} attempt(s) in {waited:.1f}s"
        )
        self.target = target
        self.attempts = attempts
        self.waited = waited
        self.step_index = step_index


class RunnerStateError(LampstackError):
    """Raised when the runner's status file or marker cannot be read or written."""

    pass
