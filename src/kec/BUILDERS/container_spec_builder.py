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
Builds the Kubernetes ephemeral container model for a container request.
"""
from typing import List, Optional
from kubernetes import client

from ..MODELS.container_request import ContainerRequest, EnvVar
from .container_monitor import ContainerMonitor


class ContainerSpecBuilder:
    """
    Translates a validated :class:`ContainerRequest` into a ``V1EphemeralContainer``.
    Pure transformation, nothing here talks to the cluster.
    """

    def __init__(self,
                 monitor: Optional[ContainerMonitor] = None,
                 primary_container_name: str = "agent"):
        """
        :param monitor: Provides the keep-alive command.
        :param primary_container_name: Pod container whose working dir and mounts are shared.
        """
        self.monitor = monitor or ContainerMonitor()
        self.primary_container_name = primary_container_name

    def build(self,
              name: str,
              request: ContainerRequest,
              pod: client.V1Pod) -> client.V1EphemeralContainer:
        """
        Creates the ephemeral container for the target Pod.

        :param name: Container name, must be unique within the Pod.
        :param request: Requested ephemeral container.
        :param pod: Host Pod.
        :return: Ephemeral container model.
        """
        container = client.V1EphemeralContainer(
            name=name,
            image=request.image,
            image_pull_policy="Always" if request.always_pull_image else "IfNotPresent",
            target_container_name=request.target_container,
            tty=True,
            stdin=True,
            env=[self._env_var(env_var) for env_var in request.env_vars],
        )

        # Share the file system view of the primary container
        primary = self._primary_container(pod)
        if primary is not None:
            container.volume_mounts = list(primary.volume_mounts or [])
            container.working_dir = primary.working_dir

        if request.run_as_user is not None or request.run_as_group is not None:
            container.security_context = client.V1SecurityContext(
                run_as_user=request.run_as_user,
                run_as_group=request.run_as_group,
            )

        # Only linux containers are supported by the monitor script
        monitor_cmd = self.monitor.wait_command(name)
        if request.command is None:
            # Image entrypoint is expected to take an executable as first argument
            container.args = monitor_cmd
        elif not request.command:
            # Empty command overrides the entrypoint, like docker --entrypoint=''
            container.command = monitor_cmd
        else:
            container.command = list(request.command)
            container.args = monitor_cmd

        return container

    def stop_command(self, name: str) -> List[str]:
        return self.monitor.stop_command(name)

    def _primary_container(self, pod: client.V1Pod) -> Optional[client.V1Container]:
        if pod.spec is None:
            return None
        for container in pod.spec.containers or []:
            if container.name == self.primary_container_name:
                return container
        return None

    @staticmethod
    def _env_var(env_var: EnvVar) -> client.V1EnvVar:
        if env_var.is_secret:
            return client.V1EnvVar(
                name=env_var.name,
                value_from=client.V1EnvVarSource(
                    secret_key_ref=client.V1SecretKeySelector(
                        name=env_var.secret_name,
                        key=env_var.secret_key,
                        optional=env_var.optional,
                    )
                ),
            )
        return client.V1EnvVar(name=env_var.name, value=env_var.value)
