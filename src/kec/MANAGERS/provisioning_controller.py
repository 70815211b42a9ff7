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
Lifecycle of one ephemeral container invocation: policy check, Pod update,
readiness wait, body execution and teardown.
"""
import logging
import random
import threading
import time
from enum import Enum
from typing import List, Optional, Tuple

from kubernetes import client
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_random,
)

from ..BUILDERS.container_monitor import ContainerMonitor
from ..BUILDERS.container_spec_builder import ContainerSpecBuilder
from ..errors import (
    PolicyRejected,
    ProvisioningError,
    ProvisioningFailed,
    ReadinessTimeout,
    StartFailed,
)
from ..MODELS.container_status import ContainerInstance, RetryState
from ..MODELS.controller_config import ControllerSettings
from ..MODELS.policy_config import PolicyConfig
from ..RULES.rule_evaluator import RuleEvaluator
from ..RUNNERS.step_context import StepContext
from .identity import IdentityLookupError, IdentitySource
from .metrics import ProvisioningMetrics, default_metrics
from .status_monitor import (
    ContainerRunningCondition,
    ContainerTerminatedCondition,
    StartOutcome,
    failure_hints,
)
from .workload_client import (
    ClusterError,
    ConflictError,
    WaitInterrupted,
    WaitTimeout,
    WorkloadClient,
)

logger = logging.getLogger(__name__)

NAME_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"
NAME_SUFFIX_LENGTH = 5
MAX_NAME_LENGTH = 63
POD_CONTAINER_VARIABLE = "POD_CONTAINER"


class ControllerState(str, Enum):
    INIT = "init"
    RULE_CHECK = "rule-check"
    BUILDING = "building"
    PATCHING = "patching"
    WAITING_READY = "waiting-ready"
    ACTIVE = "active"
    STOPPING = "stopping"
    TERMINATED = "terminated"


def generate_container_name(prefix: str, request_hash: str) -> str:
    """
    Unique container name ``<prefix>-<hash>-<random>``, at most 63 characters.
    """
    suffix = "".join(random.choice(NAME_ALPHABET) for _ in range(NAME_SUFFIX_LENGTH))
    tail = f"-{request_hash}-{suffix}"
    return prefix.lower()[:MAX_NAME_LENGTH - len(tail)] + tail


class Teardown:
    """
    Stops an ephemeral container exactly once, whoever asks first. Failures
    are logged and never raised.
    """

    def __init__(self,
                 workload_client: WorkloadClient,
                 context: StepContext,
                 container_name: str,
                 stop_command: List[str],
                 settings: ControllerSettings):
        self.workload_client = workload_client
        self.context = context
        self.container_name = container_name
        self.stop_command = stop_command
        self.settings = settings
        self.done = False
        self._lock = threading.Lock()

    def run(self) -> None:
        with self._lock:
            if self.done:
                return
            self.done = True
            self._stop()

    def _stop(self) -> None:
        workload = self.context.workload
        logger.debug("Stopping ephemeral container %s on Pod %s", self.container_name, workload)
        try:
            with self.workload_client.exec_in_container(workload, self.container_name, self.stop_command) as session:
                output = session.wait(self.settings.exec_timeout)
                if session.returncode is not None and session.returncode != 0:
                    logger.warning(
                        "Stop command of ephemeral container %s exited with %s: %s",
                        self.container_name, session.returncode, output.strip(),
                    )
        except Exception as e:
            logger.warning("Failed to stop ephemeral container %s on Pod %s: %s",
                           self.container_name, workload, e)
            return

        try:
            # Abort event is already set when stopping on cancellation, so no cancel here
            self.workload_client.wait_for_container(
                workload,
                self.container_name,
                ContainerTerminatedCondition(),
                timeout=self.settings.stop_timeout,
                interval=self.settings.ready_poll_interval,
            )
            logger.debug("Ephemeral container %s terminated", self.container_name)
        except WaitTimeout:
            logger.warning("Ephemeral container %s did not terminate within %s seconds",
                           self.container_name, self.settings.stop_timeout)
        except ClusterError as e:
            logger.warning("Failed to confirm termination of ephemeral container %s: %s",
                           self.container_name, e)


class ProvisioningController:
    """
    Adds an ephemeral container to the host Pod of a step, runs the step body
    once it is running and stops it again.

    ``run()`` executes the whole lifecycle on the calling thread. ``start()``
    runs it on a worker thread, ``join()`` waits for it and re-raises its
    failure, and ``stop()`` cancels it from any thread.
    """

    def __init__(self,
                 context: StepContext,
                 workload_client: WorkloadClient,
                 policy: PolicyConfig,
                 settings: Optional[ControllerSettings] = None,
                 builder: Optional[ContainerSpecBuilder] = None,
                 evaluator: Optional[RuleEvaluator] = None,
                 identity: Optional[IdentitySource] = None,
                 metrics: Optional[ProvisioningMetrics] = None):
        """
        :param context: Step the container is provisioned for.
        :param workload_client: Cluster access.
        :param policy: Rule snapshot used for this invocation.
        :param settings: Retry and timeout settings.
        :param builder: Builds the container spec.
        :param evaluator: Evaluates the policy rules.
        :param identity: Default user and group when the request sets none.
        :param metrics: Telemetry sink, defaults to the process wide one.
        """
        self.context = context
        self.workload_client = workload_client
        self.policy = policy
        self.settings = settings or ControllerSettings()
        self.builder = builder or ContainerSpecBuilder(
            monitor=ContainerMonitor(self.settings.monitor_poll_interval),
            primary_container_name=self.settings.primary_container_name,
        )
        self.evaluator = evaluator or RuleEvaluator()
        self.identity = identity
        self.metrics = metrics or default_metrics()

        self.state = ControllerState.INIT
        self.instance: Optional[ContainerInstance] = None
        self.patch_retry = RetryState(self.settings.patch_max_retry)
        self.start_retry = RetryState(self.settings.start_max_retry)

        self._lock = threading.Lock()
        self._teardown: Optional[Teardown] = None
        self._added: List[str] = []
        self._identity_resolved = False
        self._default_ids: Optional[Tuple[int, int]] = None
        self._thread: Optional[threading.Thread] = None
        self._error: Optional[BaseException] = None

    @property
    def cloud(self) -> str:
        return self.context.workload.cloud

    # Execution modes

    def start(self) -> None:
        """
        Runs the invocation on a worker thread.
        """
        self._thread = threading.Thread(
            target=self._run_captured,
            name=f"kec-{self.context.workload.name}",
            daemon=True,
        )
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Waits for the worker thread and re-raises its failure.

        :param timeout: Seconds to wait, None waits forever.
        :return: True if the invocation finished.
        """
        if self._thread is None:
            raise RuntimeError("Controller was not started")
        self._thread.join(timeout)
        if self._thread.is_alive():
            return False
        if self._error is not None:
            raise self._error
        return True

    def stop(self, cause: Optional[str] = None) -> None:
        """
        Cancels the invocation. An active container is stopped before this returns.
        """
        logger.debug("Stop requested for Pod %s: %s", self.context.workload, cause or "no cause")
        self.context.abort(cause)
        with self._lock:
            teardown = self._teardown
        if teardown is not None:
            teardown.run()

    def _run_captured(self) -> None:
        try:
            self.run()
        except BaseException as e:
            self._error = e

    def run(self) -> None:
        """
        Executes the invocation on the calling thread.

        :raises ProvisioningError: If the container could not be provided.
        """
        try:
            self._check_rules()
            outcome = self._provision()
            self._activate(outcome.instance)
        except WaitInterrupted:
            logger.info("Ephemeral container invocation on Pod %s interrupted: %s",
                        self.context.workload, self.context.cancel_cause or "no cause")
            self._stop_added_container()
        except ProvisioningError as e:
            self.metrics.creation_failed.labels(cloud=self.cloud, kind=e.kind.value).inc()
            raise
        finally:
            self._set_state(ControllerState.TERMINATED)

    def _set_state(self, state: ControllerState) -> None:
        logger.debug("Controller for Pod %s: %s -> %s", self.context.workload, self.state.value, state.value)
        self.state = state

    # Policy

    def _check_rules(self) -> None:
        self._set_state(ControllerState.RULE_CHECK)
        rules = self.policy.rules_for(self.cloud)
        if rules is None:
            raise PolicyRejected(f"Ephemeral containers not enabled on {self.cloud}")
        self.evaluator.evaluate(self.context.request, rules)

    # Provisioning

    def _provision(self) -> StartOutcome:
        started = time.monotonic()
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.start_max_retry + 1),
            retry=retry_if_result(lambda outcome: outcome.retryable),
            wait=wait_random(0, self.settings.start_retry_max_wait),
            sleep=self._sleep,
            before_sleep=self._before_start_retry,
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        outcome = retrying(self._start_container)

        if outcome.terminated is not None:
            self._start_failed(outcome)

        self.metrics.creation_duration.labels(cloud=self.cloud).observe(time.monotonic() - started)
        self.metrics.created.labels(cloud=self.cloud).inc()
        return outcome

    def _start_container(self) -> StartOutcome:
        if self.context.aborted:
            raise WaitInterrupted("Cancelled before the container was added")
        self._set_state(ControllerState.BUILDING)
        workload = self.context.workload
        request = self.context.request
        name = generate_container_name(self.settings.name_prefix, request.stable_hash())
        instance = ContainerInstance(name)
        self.instance = instance

        try:
            pod = self.workload_client.get_workload(workload)
        except ClusterError as e:
            raise ProvisioningFailed(f"Could not read Pod {workload}: {e.message}") from e

        container = self.builder.build(name, request, pod)
        self._apply_default_identity(container)

        self._set_state(ControllerState.PATCHING)
        self._patch(container)
        self._added.append(name)

        security = container.security_context
        running_as = ""
        if security is not None:
            running_as = f" (running as {security.run_as_user}:{security.run_as_group})"
        self.context.print_console(
            f"Starting ephemeral container {name} with image {request.image}{running_as}"
        )

        self._set_state(ControllerState.WAITING_READY)
        return self._wait_ready(instance)

    def _apply_default_identity(self, container: client.V1EphemeralContainer) -> None:
        if container.security_context is not None or self.identity is None:
            return

        if not self._identity_resolved:
            self._identity_resolved = True
            try:
                self._default_ids = self.identity.lookup()
            except IdentityLookupError as e:
                logger.warning("Could not determine step user and group, using image defaults: %s", e)

        if self._default_ids is not None:
            uid, gid = self._default_ids
            container.security_context = client.V1SecurityContext(run_as_user=uid, run_as_group=gid)

    def _patch(self, container: client.V1EphemeralContainer) -> None:
        workload = self.context.workload
        self.patch_retry.attempts = 0
        jitter = wait_random(0, self.settings.patch_retry_max_wait)

        def wait(retry_state: RetryCallState) -> float:
            error = retry_state.outcome.exception()
            if isinstance(error, ConflictError) and error.retry_after is not None:
                return float(error.retry_after)
            return jitter(retry_state)

        retrying = Retrying(
            stop=stop_after_attempt(self.patch_retry.max_attempts + 1),
            retry=retry_if_exception_type(ConflictError),
            wait=wait,
            sleep=self._sleep,
            before_sleep=self._before_patch_retry,
            reraise=True,
        )
        try:
            retrying(self.workload_client.patch_add_ephemeral_container, workload, container)
        except ConflictError as e:
            logger.warning("Giving up adding ephemeral container %s to Pod %s after %d conflicts",
                           container.name, workload, self.patch_retry.attempts)
            raise ProvisioningFailed(
                f"Ephemeral container could not be added. {e.message} ({e.reason}). "
                f"Reached max retry limit ({self.patch_retry.attempts} retries).",
                retries=self.patch_retry.attempts,
            ) from e
        except ClusterError as e:
            raise ProvisioningFailed(
                f"Ephemeral container could not be added. {e.message} ({e.reason})",
                retries=self.patch_retry.attempts,
            ) from e

    def _before_patch_retry(self, retry_state: RetryCallState) -> None:
        self.patch_retry.attempts += 1
        self.metrics.patch_conflicts.labels(cloud=self.cloud).inc()
        logger.info("Pod %s changed while adding ephemeral container, retrying in %.2fs (%d of %d)",
                    self.context.workload, retry_state.next_action.sleep,
                    self.patch_retry.attempts, self.patch_retry.max_attempts)

    def _wait_ready(self, instance: ContainerInstance) -> StartOutcome:
        workload = self.context.workload
        condition = ContainerRunningCondition(instance, self.context.print_console)
        started = time.monotonic()
        try:
            self.workload_client.wait_for_container(
                workload,
                instance.name,
                condition,
                timeout=self.settings.ready_timeout,
                interval=self.settings.ready_poll_interval,
                cancel=self.context.abort_event,
            )
        except WaitTimeout as e:
            last = e.last_status.describe() if e.last_status is not None else "no status reported"
            raise ReadinessTimeout(
                f"Ephemeral container {instance.name} on Pod {workload.name} failed to start "
                f"after {self.settings.ready_timeout:g} seconds: {last}",
                instance.name,
                e.last_status,
            ) from e
        except ClusterError as e:
            raise ProvisioningFailed(
                f"Could not read status of ephemeral container {instance.name} on Pod {workload.name}: {e.message}"
            ) from e

        elapsed = time.monotonic() - started
        self.metrics.creation_wait_duration.labels(cloud=self.cloud).observe(elapsed)
        if condition.terminated is not None:
            return StartOutcome(instance, condition.terminated)

        self.context.print_console(f"Ephemeral container {instance.name} ready after {int(elapsed)} seconds")
        return StartOutcome(instance)

    def _before_start_retry(self, retry_state: RetryCallState) -> None:
        self.start_retry.attempts += 1
        self.metrics.creation_retried.labels(cloud=self.cloud).inc()
        outcome: StartOutcome = retry_state.outcome.result()
        self.context.print_console(
            f"Ephemeral container terminated while starting with reason {outcome.terminated.reason}, "
            f"trying again ({self.start_retry.attempts} of {self.start_retry.max_attempts})"
        )

    def _start_failed(self, outcome: StartOutcome) -> None:
        status = outcome.terminated
        name = outcome.instance.name
        pod_name = self.context.workload.name
        hints = failure_hints(status)
        for hint in hints:
            self.context.print_console(hint)

        if outcome.retryable:
            message = (f"Ephemeral container {name} on Pod {pod_name} failed to start after "
                       f"{self.start_retry.attempts} retries: {status.describe()}")
        else:
            message = f"Ephemeral container {name} on Pod {pod_name} failed to start: {status.describe()}"
        if hints:
            message += " " + " ".join(hints)
        raise StartFailed(message, name, status, retries=self.start_retry.attempts)

    def _sleep(self, seconds: float) -> None:
        if self.context.abort_event.wait(seconds):
            raise WaitInterrupted("Retry wait interrupted")

    # Activation and teardown

    def _activate(self, instance: ContainerInstance) -> None:
        teardown = self._new_teardown(instance.name)
        with self._lock:
            self._teardown = teardown
        self._set_state(ControllerState.ACTIVE)

        if self.context.aborted:
            logger.debug("Invocation cancelled before the body started")
            self._set_state(ControllerState.STOPPING)
            teardown.run()
            return

        env = self.context.environment({POD_CONTAINER_VARIABLE: instance.name})

        def finish() -> None:
            self._set_state(ControllerState.STOPPING)
            teardown.run()

        self.context.invoke_body(env, on_finish=finish)

    def _new_teardown(self, container_name: str) -> Teardown:
        return Teardown(
            self.workload_client,
            self.context,
            container_name,
            self.builder.stop_command(container_name),
            self.settings,
        )

    def _stop_added_container(self) -> None:
        instance = self.instance
        if self._teardown is not None or instance is None or instance.name not in self._added:
            return
        if instance.status is not None and instance.status.terminated:
            return
        # Best effort, the container may not be running yet
        self._new_teardown(instance.name).run()
