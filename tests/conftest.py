import threading
import time
from typing import Dict, List, Optional

import pytest
from kubernetes import client

from kec.MANAGERS.metrics import ProvisioningMetrics
from kec.MANAGERS.workload_client import (
    ClusterError,
    ConflictError,
    ExecSession,
    WorkloadClient,
    WorkloadNotFound,
)
from kec.MODELS.container_request import ContainerRequest
from kec.MODELS.container_status import ContainerState, ContainerStatus
from kec.MODELS.controller_config import ControllerSettings
from kec.MODELS.workload import WorkloadRef
from kec.RUNNERS.step_context import StepContext

RUNNING = {"state": ContainerState.RUNNING}
CREATING = {"state": ContainerState.WAITING, "reason": "ContainerCreating"}
START_ERROR = {"state": ContainerState.TERMINATED, "reason": "StartError", "message": "exec format", "exit_code": 128}


class FakeExecSession(ExecSession):
    def __init__(self, output: str = "", returncode: Optional[int] = 0):
        self.output = output
        self._returncode = returncode
        self.closed = False

    def wait(self, timeout: float) -> str:
        return self.output

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    def close(self) -> None:
        self.closed = True


class FakeWorkloadClient(WorkloadClient):
    """
    In-memory Pod with scripted conflicts and container status sequences.

    ``status_scripts[i]`` is the sequence of statuses reported for the i-th
    added container, the last entry repeats. Containers without a script run.
    """

    def __init__(self,
                 conflicts: int = 0,
                 retry_after: Optional[float] = None,
                 patch_error: Optional[ClusterError] = None,
                 status_scripts: Optional[List[List[dict]]] = None,
                 patch_latency: float = 0.0,
                 exec_result=("", 0),
                 missing: bool = False):
        self.pod = client.V1Pod(
            metadata=client.V1ObjectMeta(name="build-pod", namespace="ci"),
            spec=client.V1PodSpec(containers=[
                client.V1Container(
                    name="agent",
                    image="agent:1",
                    working_dir="/home/agent",
                    volume_mounts=[client.V1VolumeMount(name="workspace", mount_path="/workspace")],
                ),
            ]),
        )
        self.conflicts = conflicts
        self.retry_after = retry_after
        self.patch_error = patch_error
        self.status_scripts = [list(script) for script in status_scripts or []]
        self.patch_latency = patch_latency
        self.exec_result = exec_result
        self.missing = missing

        self.resource_version = 0
        self.patch_calls = 0
        self.added: List[client.V1EphemeralContainer] = []
        self.execs: List[tuple] = []
        self.stop_counts: Dict[str, int] = {}
        self.sessions: List[FakeExecSession] = []
        self.status_reads = 0
        self._lock = threading.Lock()

    @property
    def added_names(self) -> List[str]:
        return [container.name for container in self.added]

    def get_workload(self, workload: WorkloadRef) -> client.V1Pod:
        if self.missing:
            raise WorkloadNotFound(f"pods \"{workload.name}\" not found", status=404, reason="NotFound")
        return self.pod

    def patch_add_ephemeral_container(self, workload, container) -> None:
        with self._lock:
            self.patch_calls += 1
            version = self.resource_version
            if self.patch_error is not None:
                raise self.patch_error
            if self.conflicts > 0:
                self.conflicts -= 1
                raise ConflictError(
                    "Operation cannot be fulfilled on pods \"build-pod\": the object has been modified",
                    status=409,
                    reason="Conflict",
                    retry_after=self.retry_after,
                )

        if self.patch_latency:
            time.sleep(self.patch_latency)

        with self._lock:
            if self.resource_version != version:
                raise ConflictError("the object has been modified", status=409, reason="Conflict")
            self.resource_version += 1
            self.added.append(container)

    def get_container_status(self, workload, container_name) -> Optional[ContainerStatus]:
        with self._lock:
            self.status_reads += 1
            if self.stop_counts.get(container_name):
                return ContainerStatus(
                    name=container_name, state=ContainerState.TERMINATED, reason="Completed", exit_code=0,
                )
            if container_name not in self.added_names:
                return None
            index = self.added_names.index(container_name)
            if index >= len(self.status_scripts):
                return ContainerStatus(name=container_name, **RUNNING)
            script = self.status_scripts[index]
            entry = script.pop(0) if len(script) > 1 else script[0]
            return ContainerStatus(name=container_name, **entry)

    def open_exec(self, workload, container_name, command) -> ExecSession:
        with self._lock:
            self.execs.append((container_name, list(command)))
            if command and command[0] == "touch":
                self.stop_counts[container_name] = self.stop_counts.get(container_name, 0) + 1
                session = FakeExecSession()
            else:
                output, returncode = self.exec_result
                session = FakeExecSession(output, returncode)
            self.sessions.append(session)
            return session


@pytest.fixture
def make_client():
    return FakeWorkloadClient


@pytest.fixture
def fake_client():
    return FakeWorkloadClient()


@pytest.fixture
def settings():
    return ControllerSettings(
        patch_retry_max_wait=0,
        start_retry_max_wait=0,
        ready_timeout=0.5,
        ready_poll_interval=0.01,
        stop_timeout=0.2,
        exec_timeout=1.0,
    )


@pytest.fixture
def metrics():
    return ProvisioningMetrics()


@pytest.fixture
def workload():
    return WorkloadRef(namespace="ci", name="build-pod", cloud="kubernetes")


@pytest.fixture
def make_context(workload):
    def factory(image="maven:3", body=None, console=None, **request_kwargs):
        request = ContainerRequest(image=image, **request_kwargs)
        lines = []
        context = StepContext(
            request,
            workload,
            body=body or (lambda env: None),
            console=console or lines.append,
        )
        context.lines = lines
        return context
    return factory
