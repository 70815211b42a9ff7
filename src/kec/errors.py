"""
Failures surfaced to callers of the provisioning controller.
"""
from enum import Enum
from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .MODELS.container_status import ContainerStatus


class FailureKind(str, Enum):
    """
    Machine readable category of a provisioning failure.
    """
    POLICY_REJECTED = "policy-rejected"
    PROVISIONING_FAILED = "provisioning-failed"
    START_FAILED = "start-failed"
    READINESS_TIMEOUT = "readiness-timeout"


class ProvisioningError(Exception):
    """
    Base class for every fatal condition of an ephemeral container invocation.
    The message is meant to be shown to the user as is.
    """
    kind: FailureKind = FailureKind.PROVISIONING_FAILED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class PolicyRejected(ProvisioningError):
    """
    A policy rule denied the container request. Never retried.
    """
    kind = FailureKind.POLICY_REJECTED


class ProvisioningFailed(ProvisioningError):
    """
    The container could not be added to the Pod spec.
    """
    kind = FailureKind.PROVISIONING_FAILED

    def __init__(self, message: str, retries: int = 0):
        super().__init__(message)
        self.retries = retries


class StartFailed(ProvisioningError):
    """
    The container terminated before it reached the running state.
    """
    kind = FailureKind.START_FAILED

    def __init__(self,
                 message: str,
                 container_name: str,
                 status: Optional["ContainerStatus"] = None,
                 retries: int = 0):
        super().__init__(message)
        self.container_name = container_name
        self.status = status
        self.retries = retries


class ReadinessTimeout(ProvisioningError):
    """
    The container did not report running within the configured timeout.
    """
    kind = FailureKind.READINESS_TIMEOUT

    def __init__(self,
                 message: str,
                 container_name: str,
                 last_status: Optional["ContainerStatus"] = None):
        super().__init__(message)
        self.container_name = container_name
        self.last_status = last_status
