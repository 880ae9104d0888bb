"""
Error taxonomy for cluster scaling and reconciliation
"""

from typing import Optional


class ScalerError(Exception):
    """Base class for every error raised by k8s_scaler"""


class ConfigurationError(ScalerError):
    """Malformed declaration, invalid counts, offset collisions. Never retried."""

    def __init__(self, message: str, cluster: Optional[str] = None, field: Optional[str] = None):
        self.cluster = cluster
        self.field = field
        location = ".".join(part for part in (cluster, field) if part)
        super().__init__(f"{location}: {message}" if location else message)


class ObservationError(ScalerError):
    """Hypervisor query failed for a node or for the VM listing"""


class TransientInfraError(ScalerError):
    """Infrastructure not ready yet (SSH, health endpoint, join artifact). Retried."""


class TerminalStepFailure(ScalerError):
    """A bootstrap step exhausted its retry policy"""

    def __init__(self, step: str, attempts: int, last_error: Optional[BaseException] = None,
                 cluster: Optional[str] = None):
        self.step = step
        self.attempts = attempts
        self.last_error = last_error
        self.cluster = cluster
        message = f"{step} failed after {attempts} attempt(s)"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)


class VerificationFailure(ScalerError):
    """Re-parsed declaration does not contain the requested values"""

    def __init__(self, message: str, cluster: Optional[str] = None, field: Optional[str] = None):
        self.cluster = cluster
        self.field = field
        super().__init__(message)


class OperationAborted(ScalerError):
    """The operator declined a confirmation prompt"""
