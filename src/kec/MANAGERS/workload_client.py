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
Contract between the provisioning controller and the cluster holding the host Pod.
"""
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

from kubernetes import client

from ..MODELS.container_status import ContainerStatus
from ..MODELS.workload import WorkloadRef

StatusCondition = Callable[[Optional[ContainerStatus]], bool]


class ClusterError(Exception):
    """
    Error reported by the cluster API.
    """
    def __init__(self,
                 message: str,
                 status: Optional[int] = None,
                 reason: Optional[str] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.reason = reason
        self.retry_after = retry_after


class ConflictError(ClusterError):
    """
    Write rejected because the object changed since it was read.
    """


class WorkloadNotFound(ClusterError):
    """
    The host Pod does not exist (anymore).
    """


class WaitTimeout(Exception):
    """
    Condition not met within the timeout. Carries the last observed status.
    """
    def __init__(self, container_name: str, timeout: float, last_status: Optional[ContainerStatus] = None):
        super().__init__(f"Timed out after {timeout} seconds waiting for container {container_name}")
        self.container_name = container_name
        self.timeout = timeout
        self.last_status = last_status


class WaitInterrupted(Exception):
    """
    A wait was cancelled from outside, not a failure.
    """


class ExecSession(ABC):
    """
    Command running inside a container.
    """

    @abstractmethod
    def wait(self, timeout: float) -> str:
        """
        Waits for the command to finish.

        :param timeout: Seconds to wait at most.
        :return: Combined stdout and stderr output.
        """

    @property
    @abstractmethod
    def returncode(self) -> Optional[int]:
        """Exit code, None while unknown."""

    @abstractmethod
    def close(self) -> None:
        """Releases the connection."""


class WorkloadClient(ABC):
    """
    Cluster operations needed to manage one ephemeral container of a Pod.
    """

    @abstractmethod
    def get_workload(self, workload: WorkloadRef) -> client.V1Pod:
        """
        Reads the host Pod.

        :raises WorkloadNotFound: If the Pod does not exist.
        """

    @abstractmethod
    def patch_add_ephemeral_container(self,
                                      workload: WorkloadRef,
                                      container: client.V1EphemeralContainer) -> None:
        """
        Appends a container to the ephemeral containers of the live Pod spec.

        :raises ConflictError: If the Pod changed between read and write.
        :raises ClusterError: For any other API failure.
        """

    @abstractmethod
    def get_container_status(self,
                             workload: WorkloadRef,
                             container_name: str) -> Optional[ContainerStatus]:
        """
        Reads the reported status of an ephemeral container.

        :return: Status, or None if the Pod reports nothing for the container yet.
        """

    @abstractmethod
    def open_exec(self,
                  workload: WorkloadRef,
                  container_name: str,
                  command: List[str]) -> ExecSession:
        """
        Starts a command inside a container of the Pod.
        """

    @contextmanager
    def exec_in_container(self,
                          workload: WorkloadRef,
                          container_name: str,
                          command: List[str]) -> Iterator[ExecSession]:
        """
        Runs a command inside a container, the session is closed on exit.
        """
        session = self.open_exec(workload, container_name, command)
        try:
            yield session
        finally:
            session.close()

    def wait_for_container(self,
                           workload: WorkloadRef,
                           container_name: str,
                           condition: StatusCondition,
                           timeout: float,
                           interval: float = 1.0,
                           cancel: Optional[threading.Event] = None) -> Optional[ContainerStatus]:
        """
        Polls the container status until the condition holds.

        :param workload: Host Pod.
        :param container_name: Ephemeral container to watch.
        :param condition: Called with every observed status.
        :param timeout: Seconds to wait at most.
        :param interval: Seconds between polls.
        :param cancel: Event that interrupts the wait when set.
        :return: The status that satisfied the condition.
        :raises WaitTimeout: If the condition did not hold in time.
        :raises WaitInterrupted: If the cancel event was set.
        """
        deadline = time.monotonic() + timeout
        status = None
        while True:
            if cancel is not None and cancel.is_set():
                raise WaitInterrupted(f"Wait for container {container_name} interrupted")

            status = self.get_container_status(workload, container_name)
            if condition(status):
                return status

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise WaitTimeout(container_name, timeout, status)

            delay = min(interval, remaining)
            if cancel is not None:
                if cancel.wait(delay):
                    raise WaitInterrupted(f"Wait for container {container_name} interrupted")
            else:
                time.sleep(delay)
