"""
Models for the runtime state of an ephemeral container.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class ContainerState(str, Enum):
    """
    Container state as reported by the cluster.
    """
    WAITING = "waiting"
    RUNNING = "running"
    TERMINATED = "terminated"


class ContainerStatus(BaseModel):
    """
    Last observed status of a container. Reason, message, signal and exit
    code are only filled in for the states that carry them.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    state: ContainerState = ContainerState.WAITING
    reason: Optional[str] = None
    message: Optional[str] = None
    signal: Optional[int] = None
    exit_code: Optional[int] = None

    @property
    def running(self) -> bool:
        return self.state == ContainerState.RUNNING

    @property
    def terminated(self) -> bool:
        return self.state == ContainerState.TERMINATED

    def describe(self) -> str:
        """
        Human readable summary used in console and error messages.
        """
        details = []
        if self.reason is not None:
            details.append(f"reason={self.reason}")
        if self.message is not None:
            details.append(f"message={self.message}")
        if self.state == ContainerState.TERMINATED:
            details.append(f"signal={self.signal}")
            details.append(f"exitCode={self.exit_code}")
        if not details:
            return self.state.value
        return f"{self.state.value}({', '.join(details)})"


@dataclass
class ContainerInstance:
    """
    Identity of one provisioning attempt. Every attempt gets a new name, a
    terminated container is never reused.
    """
    name: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: Optional[ContainerStatus] = None

    def update(self, status: Optional[ContainerStatus]) -> None:
        if status is not None:
            self.status = status


@dataclass
class RetryState:
    """
    Per-operation retry counters.
    """
    max_attempts: int
    attempts: int = 0
