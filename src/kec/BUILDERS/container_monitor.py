"""
Commands that keep an ephemeral container alive and make it exit again.

Ephemeral containers cannot be removed through the API. The container runs a
file monitor script instead, and the step signals it to exit by creating the
monitored file from an exec session.
"""
from typing import List
from jinja2 import Template

MONITOR_TEMPLATE = (
    "set -e; { while ! test -f '{{ path }}' ; do sleep {{ poll_secs }}; done }"
)


class ContainerMonitor:
    """
    Builds the wait and stop commands for a container name.
    """

    def __init__(self, poll_interval: int = 1):
        """
        :param poll_interval: Seconds between checks for the sentinel file, at least 1.
        """
        self.poll_interval = max(1, int(poll_interval))
        self.template = Template(MONITOR_TEMPLATE)

    @staticmethod
    def sentinel_path(container_name: str) -> str:
        return f"/tmp/{container_name}-step-is-done-monitor"

    def script(self, container_name: str) -> str:
        return self.template.render(
            path=self.sentinel_path(container_name),
            poll_secs=self.poll_interval,
        )

    def wait_command(self, container_name: str) -> List[str]:
        """
        Command that blocks until the stop command has been executed.
        """
        return ["sh", "-c", self.script(container_name)]

    def stop_command(self, container_name: str) -> List[str]:
        """
        Command to execute inside the container to make the wait command exit.
        """
        return ["touch", self.sentinel_path(container_name)]
