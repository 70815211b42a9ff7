"""
Execution context of a build step that asked for an ephemeral container.
"""
import threading
from typing import Callable, Dict, List, Mapping, Optional

from ..MANAGERS.environment_manager import EnvironmentManager
from ..MODELS.container_request import ContainerRequest
from ..MODELS.workload import WorkloadRef

StepBody = Callable[[Dict[str, str]], None]


class StepContext:
    """
    Everything the provisioning controller needs from the step: the request,
    the host Pod, the body to run once the container is ready, and the abort
    event that cancels the invocation.
    """

    def __init__(self,
                 request: ContainerRequest,
                 workload: WorkloadRef,
                 body: StepBody,
                 console: Optional[Callable[[str], None]] = None,
                 global_vars: Optional[Mapping[str, str]] = None,
                 run_vars: Optional[Mapping[str, str]] = None,
                 env_files: Optional[List[str]] = None,
                 env_manager: Optional[EnvironmentManager] = None):
        """
        :param request: Requested ephemeral container.
        :param workload: Host Pod.
        :param body: Called with the merged environment while the container is active.
        :param console: Receives user facing progress lines, defaults to print.
        :param global_vars: Host-wide variables.
        :param run_vars: Variables of the current run.
        :param env_files: .env files contributing host-wide variables.
        :param env_manager: Merges the environment handed to the body.
        """
        self.request = request
        self.workload = workload
        self.body = body
        self.console = console or print
        self.global_vars = dict(global_vars or {})
        self.run_vars = dict(run_vars or {})
        self.env_files = list(env_files or [])
        self.env_manager = env_manager or EnvironmentManager()

        self.abort_event = threading.Event()
        self.cancel_cause: Optional[str] = None

    def print_console(self, line: str) -> None:
        self.console(line)

    def abort(self, cause: Optional[str] = None) -> None:
        """
        Requests cancellation. Only the first cause is kept.
        """
        if not self.abort_event.is_set():
            self.cancel_cause = cause
        self.abort_event.set()

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def environment(self, binding: Mapping[str, str]) -> Dict[str, str]:
        """
        Environment for the body, the binding overrides host and run variables.
        """
        return self.env_manager.get_merged_environment(
            binding,
            global_vars=self.global_vars,
            run_vars=self.run_vars,
            env_files=self.env_files,
        )

    def invoke_body(self, env: Dict[str, str], on_finish: Callable[[], None]) -> None:
        """
        Runs the body, ``on_finish`` is called whether it succeeds or not.
        """
        try:
            self.body(env)
        finally:
            on_finish()
