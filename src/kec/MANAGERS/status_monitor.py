# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Status conditions used while waiting for an ephemeral container to start or stop.
"""
from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional, Set, Tuple

from ..MODELS.container_status import ContainerInstance, ContainerStatus

# Termination reasons that are worth a new attempt with a fresh container
START_RETRY_REASONS: FrozenSet[str] = frozenset({"StartError"})

# Waiting reasons that are part of every normal start
IGNORE_REASONS: FrozenSet[str] = frozenset({"ContainerCreating", "PodInitializing"})

RESOURCE_HINT = (
    "This may be caused by insufficient resources on the node, "
    "check the resource requests and limits of the Pod."
)
ARCHITECTURE_HINT = (
    "This may be caused by an image built for a different CPU architecture than the node."
)


@dataclass
class StartOutcome:
    """
    Result of one start attempt. ``terminated`` is set if the container
    stopped before it was running.
    """
    instance: ContainerInstance
    terminated: Optional[ContainerStatus] = None

    @property
    def retryable(self) -> bool:
        return self.terminated is not None and is_retryable(self.terminated)


def is_retryable(status: ContainerStatus) -> bool:
    """
    Whether a terminated container should be replaced by a new attempt.
    """
    return status.terminated and status.reason in START_RETRY_REASONS


def failure_hints(status: ContainerStatus) -> List[str]:
    """
    Likely causes for a container that terminated while starting.
    """
    hints = []
    if status.message and "failed to create shim task: context" in status.message:
        hints.append(RESOURCE_HINT)
    if status.signal is None and status.message is None and status.reason == "Error":
        hints.append(ARCHITECTURE_HINT)
    return hints


class ContainerRunningCondition:
    """
    Wait condition satisfied once the container runs or has terminated.
    A terminated container ends the wait, its status is kept in :attr:`terminated`.
    Waiting reasons are reported to the console once per distinct reason and message.
    """

    def __init__(self, instance: ContainerInstance, console: Optional[Callable[[str], None]] = None):
        """
        :param instance: Attempt being waited for, its status is updated on every poll.
        :param console: Receives progress lines for the user.
        """
        self.instance = instance
        self.console = console or (lambda line: None)
        self.terminated: Optional[ContainerStatus] = None
        self._reported: Set[Tuple[Optional[str], Optional[str]]] = set()

    def __call__(self, status: Optional[ContainerStatus]) -> bool:
        if status is None:
            return False
        self.instance.update(status)

        if status.running:
            return True
        if status.terminated:
            self.terminated = status
            return True

        if status.reason and status.reason not in IGNORE_REASONS:
            key = (status.reason, status.message)
            if key not in self._reported:
                self._reported.add(key)
                self.console(f"Ephemeral container {status.name} waiting: {status.describe()}")
        return False


class ContainerTerminatedCondition:
    """
    Wait condition satisfied once the container has terminated or is no
    longer reported by the Pod.
    """

    def __call__(self, status: Optional[ContainerStatus]) -> bool:
        return status is None or status.terminated
