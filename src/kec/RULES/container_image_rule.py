"""
Policy rule that allows or rejects requests based on the container image name.
"""
import re
from typing import Any, Dict, Optional, Pattern

from ..MODELS.container_request import ContainerRequest
from ..REGISTRY.image_reference import ImageReference
from .policy_rule import Action, PolicyDecision, PolicyRule


def wildcard_patterns_to_regex(patterns: str) -> str:
    """
    Compiles newline separated wildcard patterns into a single anchored regex.
    ``*`` matches any character sequence, blank lines and lines starting with
    ``#`` are ignored.

    :param patterns: Newline separated image name patterns.
    :return: Regex source, empty if there is no usable pattern.
    """
    alternatives = []
    for line in patterns.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        alternatives.append(_wildcard_to_regex(line))

    if not alternatives:
        return ""
    return "^(" + "|".join(alternatives) + ")$"


def _wildcard_to_regex(pattern: str) -> str:
    return ".*".join(re.escape(part) if part else "" for part in pattern.split("*"))


class ContainerImageRule(PolicyRule):
    """
    Validates the requested image against a set of name patterns. Patterns are
    matched against the normalized image name (domain and path, without tag or
    digest), so 'maven:3' is checked as 'docker.io/library/maven'.

    With :attr:`Action.ALLOW` the patterns are an allow list and any image
    that does not match is rejected. With :attr:`Action.REJECT` they are a
    deny list and images that do not match are left to the other rules.
    """

    def __init__(self, names: str = "*", action: Optional[Action] = None):
        """
        :param names: Newline separated image name patterns.
        :param action: Action to perform on match, defaults to allow.
        """
        self.names = (names or "").strip()
        self.action = Action(action) if action is not None else Action.ALLOW
        self._regex: Optional[Pattern[str]] = None

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ContainerImageRule":
        """
        Creates a rule from a parsed configuration mapping with 'names' and 'action' keys.
        """
        action = config.get("action")
        if isinstance(action, str):
            action = Action(action.strip().lower())
        return cls(names=config.get("names", "*"), action=action)

    @property
    def regex(self) -> Pattern[str]:
        if self._regex is None:
            self._regex = re.compile(wildcard_patterns_to_regex(self.names))
        return self._regex

    def test(self, request: ContainerRequest) -> Optional[PolicyDecision]:
        reference = ImageReference.parse(request.image)
        if reference is None:
            return PolicyDecision.reject("Invalid image reference")

        if self.regex.fullmatch(reference.name):
            if self.action == Action.REJECT:
                return PolicyDecision.reject(
                    f"Image '{request.image}' has been disallowed by administrators."
                )
            return PolicyDecision(self.action)

        if self.action == Action.ALLOW:
            return PolicyDecision.reject(f"Image '{request.image}' not in allow list")

        return None

    def __repr__(self) -> str:
        return f"ContainerImageRule[action={self.action.value},names={self.names!r}]"
