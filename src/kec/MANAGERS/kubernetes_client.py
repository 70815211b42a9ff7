"""
Workload client backed by the Kubernetes API.
"""
import json
import logging
from typing import List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from ..MODELS.container_status import ContainerState, ContainerStatus
from ..MODELS.workload import WorkloadRef
from .workload_client import (
    ClusterError,
    ConflictError,
    ExecSession,
    WorkloadClient,
    WorkloadNotFound,
)

logger = logging.getLogger(__name__)


class KubernetesExecSession(ExecSession):
    """
    Exec session over the websocket returned by ``connect_get_namespaced_pod_exec``.
    """

    def __init__(self, ws_client):
        self.ws_client = ws_client

    def wait(self, timeout: float) -> str:
        self.ws_client.run_forever(timeout=timeout)
        return self.ws_client.read_all() or ""

    @property
    def returncode(self) -> Optional[int]:
        return self.ws_client.returncode

    def close(self) -> None:
        self.ws_client.close()


class KubernetesWorkloadClient(WorkloadClient):
    """
    Reads Pods, adds ephemeral containers through the ``ephemeralcontainers``
    subresource and runs commands inside them.
    """

    def __init__(self,
                 api: Optional[client.CoreV1Api] = None,
                 stream_api: Optional[client.CoreV1Api] = None):
        """
        :param api: API used for REST calls.
        :param stream_api: API used for exec, ``stream`` patches the request
            method of its api client so it must not be shared with ``api``.
        """
        self.api = api or client.CoreV1Api(client.ApiClient())
        self.stream_api = stream_api or client.CoreV1Api(client.ApiClient())

    @classmethod
    def from_config(cls,
                    kubeconfig: Optional[str] = None,
                    context: Optional[str] = None) -> "KubernetesWorkloadClient":
        """
        Loads the in-cluster configuration, falling back to a kubeconfig file.

        :param kubeconfig: Path to a kubeconfig file, defaults to ~/.kube/config.
        :param context: Kubeconfig context to use.
        """
        if kubeconfig is None and context is None:
            try:
                config.load_incluster_config()
                logger.info("Loaded in-cluster Kubernetes configuration")
                return cls()
            except config.ConfigException:
                logger.debug("Not running in a cluster, loading kubeconfig")

        try:
            config.load_kube_config(config_file=kubeconfig, context=context)
        except config.ConfigException as e:
            raise ClusterError(f"Failed to load Kubernetes configuration: {e}") from e
        logger.info("Loaded kubeconfig %s", kubeconfig or "from default location")
        return cls()

    def get_workload(self, workload: WorkloadRef) -> client.V1Pod:
        try:
            return self.api.read_namespaced_pod(name=workload.name, namespace=workload.namespace)
        except ApiException as e:
            raise self._translate(e, f"Could not read Pod {workload}") from e

    def patch_add_ephemeral_container(self,
                                      workload: WorkloadRef,
                                      container: client.V1EphemeralContainer) -> None:
        pod = self.get_workload(workload)
        containers = list(pod.spec.ephemeral_containers or [])
        containers.append(container)
        pod.spec.ephemeral_containers = containers

        # The body carries the resource version that was read, the API server
        # rejects the write with 409 if the Pod changed in between.
        try:
            self.api.replace_namespaced_pod_ephemeralcontainers(
                name=workload.name,
                namespace=workload.namespace,
                body=pod,
            )
        except ApiException as e:
            raise self._translate(e, f"Could not add ephemeral container to Pod {workload}") from e
        logger.debug("Added ephemeral container %s to Pod %s", container.name, workload)

    def get_container_status(self,
                             workload: WorkloadRef,
                             container_name: str) -> Optional[ContainerStatus]:
        pod = self.get_workload(workload)
        if pod.status is None:
            return None
        for status in pod.status.ephemeral_container_statuses or []:
            if status.name == container_name:
                return self.to_container_status(status)
        return None

    def get_container_working_dir(self, workload: WorkloadRef, container_name: str) -> Optional[str]:
        """
        Working directory of a container of the Pod, ephemeral ones included.
        """
        pod = self.get_workload(workload)
        for container in (pod.spec.containers or []) + (pod.spec.ephemeral_containers or []):
            if container.name == container_name:
                return container.working_dir
        return None

    def open_exec(self,
                  workload: WorkloadRef,
                  container_name: str,
                  command: List[str]) -> ExecSession:
        try:
            ws_client = stream(
                self.stream_api.connect_get_namespaced_pod_exec,
                name=workload.name,
                namespace=workload.namespace,
                container=container_name,
                command=command,
                stdin=False,
                stdout=True,
                stderr=True,
                tty=False,
                _preload_content=False,
            )
        except ApiException as e:
            raise self._translate(e, f"Could not exec in container {container_name} of Pod {workload}") from e
        return KubernetesExecSession(ws_client)

    @staticmethod
    def to_container_status(status: client.V1ContainerStatus) -> ContainerStatus:
        """
        Converts a Kubernetes container status into the cluster neutral model.
        """
        state = status.state
        if state is not None and state.terminated is not None:
            terminated = state.terminated
            return ContainerStatus(
                name=status.name,
                state=ContainerState.TERMINATED,
                reason=terminated.reason,
                message=terminated.message,
                signal=terminated.signal,
                exit_code=terminated.exit_code,
            )
        if state is not None and state.running is not None:
            return ContainerStatus(name=status.name, state=ContainerState.RUNNING)

        waiting = state.waiting if state is not None else None
        return ContainerStatus(
            name=status.name,
            state=ContainerState.WAITING,
            reason=waiting.reason if waiting is not None else None,
            message=waiting.message if waiting is not None else None,
        )

    @staticmethod
    def _translate(e: ApiException, context: str) -> ClusterError:
        reason = e.reason
        message = None
        retry_after = None
        if e.body:
            try:
                body = json.loads(e.body)
            except (TypeError, ValueError):
                body = None
            if isinstance(body, dict):
                reason = body.get("reason") or reason
                message = body.get("message")
                details = body.get("details") or {}
                retry_after = details.get("retryAfterSeconds")

        if retry_after is None and e.headers:
            header = e.headers.get("Retry-After")
            if header is not None and str(header).isdigit():
                retry_after = int(header)

        text = message or e.reason or f"HTTP {e.status}"
        logger.debug("%s: status=%s, reason=%s, message=%s", context, e.status, reason, text)
        if e.status == 409:
            return ConflictError(text, status=e.status, reason=reason, retry_after=retry_after)
        if e.status == 404:
            return WorkloadNotFound(text, status=e.status, reason=reason)
        return ClusterError(text, status=e.status, reason=reason, retry_after=retry_after)
