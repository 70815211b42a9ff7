"""
Models for policy rule configuration.
"""
from typing import Dict, Optional, Tuple
from pydantic import BaseModel, ConfigDict

from ..RULES.policy_rule import PolicyRule


class PolicyConfig(BaseModel):
    """
    Immutable snapshot of the configured rules. A cloud listed in ``clouds``
    has ephemeral containers enabled, its rules run before the global ones.
    """
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    clouds: Dict[str, Tuple[PolicyRule, ...]] = {}
    global_rules: Tuple[PolicyRule, ...] = ()

    def is_enabled(self, cloud: str) -> bool:
        return cloud in self.clouds

    def rules_for(self, cloud: str) -> Optional[Tuple[PolicyRule, ...]]:
        """
        Rule set for a cloud, cloud rules first.

        :param cloud: Cloud name of the host Pod.
        :return: Ordered rules, or None if the cloud does not enable ephemeral containers.
        """
        if not self.is_enabled(cloud):
            return None
        return self.clouds[cloud] + self.global_rules
