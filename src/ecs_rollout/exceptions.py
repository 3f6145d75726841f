"""Exception taxonomy for deployments.

Every failure the orchestrator can surface derives from DeploymentError, so the
CLI only needs one handler to turn a failed run into a non-zero exit code.
"""
from typing import Any, Dict, List, Optional


class DeploymentError(Exception):
    """Base class for all deployment failures."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        # Set by the orchestrator to the state the run ended in
        self.final_state = None


class UsageError(DeploymentError):
    """Conflicting or missing inputs, detected before any remote call."""
    pass


class TemplateError(DeploymentError):
    """A template or values file could not be loaded, rendered or decoded."""
    pass


class GatewayError(DeploymentError):
    """An ECS (or S3) call failed; the message names the operation."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class RegistrationError(GatewayError):
    """ECS rejected a task definition document. Never retried."""
    pass


class NotFoundError(GatewayError):
    """The target service or task definition does not exist."""
    pass


class AlreadyExistsError(DeploymentError):
    """Install was requested for a service that already exists."""
    pass


class ConvergenceError(DeploymentError):
    """A service or task did not reach the expected state."""

    def __init__(self, message: str, last_response: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.last_response = last_response


class ConvergenceTimeout(ConvergenceError):
    """The poll budget ran out before the target state was observed."""
    pass


class ConvergenceAborted(ConvergenceError):
    """A failure signal was observed before the poll budget ran out."""
    pass


class PartialFailure(DeploymentError):
    """One-shot task run where not every task/container succeeded."""

    def __init__(self, message: str, failures: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.failures = failures or []


class RollbackError(DeploymentError):
    """The compensating action for a failed deployment itself failed."""

    def __init__(self, message: str, original: Optional[DeploymentError] = None):
        super().__init__(message)
        self.original = original
