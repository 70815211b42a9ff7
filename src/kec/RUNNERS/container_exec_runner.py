"""
Step body that runs a shell script inside the ephemeral container.
"""
import shlex
from typing import Callable, Dict, List, Optional

from ..MANAGERS.workload_client import WorkloadClient
from ..MODELS.workload import WorkloadRef


class CommandFailed(Exception):
    """
    The script exited with a non-zero status.
    """
    def __init__(self, container_name: str, returncode: Optional[int], output: str = ""):
        super().__init__(f"Script in ephemeral container {container_name} exited with {returncode}")
        self.container_name = container_name
        self.returncode = returncode
        self.output = output


class ContainerCommandRunner:
    """
    Runs a script in the container named by ``POD_CONTAINER`` with the step
    environment exported in front of it.
    """

    def __init__(self,
                 workload_client: WorkloadClient,
                 workload: WorkloadRef,
                 script: str,
                 shell: Optional[str] = None,
                 output: Optional[Callable[[str], None]] = None,
                 timeout: float = 3600.0):
        """
        :param workload_client: Cluster access.
        :param workload: Host Pod.
        :param script: Shell script to run.
        :param shell: Shell executable, defaults to 'sh'.
        :param output: Receives the script output.
        :param timeout: Seconds the script may run.
        """
        self.workload_client = workload_client
        self.workload = workload
        self.script = script
        self.shell = shell or "sh"
        self.output = output or print
        self.timeout = timeout

    def command(self, env: Dict[str, str]) -> List[str]:
        exports = "".join(f"export {name}={shlex.quote(value)}; " for name, value in sorted(env.items())
                          if name.isidentifier())
        return [self.shell, "-c", exports + self.script]

    def __call__(self, env: Dict[str, str]) -> None:
        container_name = env["POD_CONTAINER"]
        with self.workload_client.exec_in_container(self.workload, container_name, self.command(env)) as session:
            output = session.wait(self.timeout)
            returncode = session.returncode

        if output:
            self.output(output.rstrip("\n"))
        if returncode != 0:
            raise CommandFailed(container_name, returncode, output)
