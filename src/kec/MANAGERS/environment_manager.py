"""
Managers for the environment a step body runs with inside an ephemeral container.
"""
import os
from typing import Dict, List, Mapping, Optional
from dotenv import dotenv_values

from ..UTILS.string_interpolation import EnvironmentInterpolator


class EnvironmentManager:
    """
    Merges host-wide and run-level variables with the container binding.
    The process environment is not part of the result, the container has its own.
    """
    def __init__(self, base_dir: str = "."):
        """
        Initializes the environment manager.

        :param base_dir: The base directory for resolving relative paths to .env files.
        """
        self.base_dir = base_dir

    def load_env_files(self, env_files: List[str]) -> Dict[str, str]:
        """
        Reads .env files, later files override earlier ones. Missing files are skipped.

        :param env_files: Paths to .env files.
        :return: Variables defined by the files.
        """
        variables: Dict[str, str] = {}
        for env_file in env_files:
            file_path = os.path.join(self.base_dir, env_file)
            if not os.path.exists(file_path):
                continue
            for name, value in dotenv_values(file_path).items():
                variables[name] = value if value is not None else ""
        return variables

    def get_merged_environment(self,
                               binding: Mapping[str, str],
                               global_vars: Optional[Mapping[str, str]] = None,
                               run_vars: Optional[Mapping[str, str]] = None,
                               env_files: Optional[List[str]] = None) -> Dict[str, str]:
        """
        Merges the step environment.

        :param binding: Variables bound by the controller, e.g. POD_CONTAINER.
        :param global_vars: Host-wide variables.
        :param run_vars: Variables of the current run.
        :param env_files: .env files contributing host-wide variables.
        :return: Expanded variables, binding entries win.
        """
        merged: Dict[str, str] = {}

        # 1. Host-wide: env files, then explicit globals
        merged.update(EnvironmentInterpolator.expand_all(self.load_env_files(env_files or []), merged))
        merged.update(EnvironmentInterpolator.expand_all(dict(global_vars or {}), merged))

        # 2. Run level
        merged.update(EnvironmentInterpolator.expand_all(dict(run_vars or {}), merged))

        # 3. Binding overrides everything
        merged.update(EnvironmentInterpolator.expand_all(dict(binding), merged))

        return merged
