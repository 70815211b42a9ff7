"""
Evaluation of ordered policy rule lists.
"""
import logging
from typing import Iterable, Optional

from ..errors import PolicyRejected
from ..MODELS.container_request import ContainerRequest
from .policy_rule import PolicyDecision, PolicyRule

logger = logging.getLogger(__name__)


class RuleEvaluator:
    """
    Runs policy rules against a container request before it is added to the Pod.
    Rules are evaluated in the order given, the first rejection wins and an
    allow never stops evaluation of the remaining rules.
    """

    def first_rejection(self,
                        request: ContainerRequest,
                        rules: Iterable[PolicyRule]) -> Optional[PolicyDecision]:
        """
        Finds the first rule rejecting the request.

        :param request: Requested ephemeral container.
        :param rules: Rules in evaluation order.
        :return: Rejecting decision with its reason filled in, or None.
        """
        for rule in rules:
            decision = rule.test(request)
            if decision is None or not decision.rejected:
                continue

            reason = decision.reason or f"Ephemeral container step rejected due to {rule!r}"
            logger.info(
                "Ephemeral container step rejected, reason=%s, image=%s, rule=%r",
                decision.reason or "none", request.image, rule,
            )
            return PolicyDecision.reject(reason)
        return None

    def evaluate(self, request: ContainerRequest, rules: Iterable[PolicyRule]) -> None:
        """
        Evaluates the rules and raises if the request is rejected.

        :raises PolicyRejected: If any rule rejects the request.
        """
        rejection = self.first_rejection(request, rules)
        if rejection is not None:
            raise PolicyRejected(rejection.reason)
