"""
Base types for ephemeral container policy rules.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..MODELS.container_request import ContainerRequest


class Action(str, Enum):
    """
    Outcome a rule asks for.
    """
    ALLOW = "allow"
    REJECT = "reject"


@dataclass(frozen=True)
class PolicyDecision:
    """
    Result of a single rule evaluation, with an optional human readable reason.
    """
    action: Action
    reason: Optional[str] = None

    @classmethod
    def reject(cls, reason: Optional[str] = None) -> "PolicyDecision":
        return cls(Action.REJECT, reason)

    @property
    def rejected(self) -> bool:
        return self.action == Action.REJECT


class PolicyRule(ABC):
    """
    Predicate evaluated before an ephemeral container is added to the Pod.
    Rules never look at cluster state, only at the request.
    """

    @abstractmethod
    def test(self, request: ContainerRequest) -> Optional[PolicyDecision]:
        """
        Evaluate the rule for a container request.

        :param request: Requested ephemeral container.
        :return: Decision, or None if the rule has no opinion.
        """
