"""
Lookup of the user and group the build step runs as, used as the default
identity of ephemeral containers.
"""
import os
import subprocess
from abc import ABC, abstractmethod
from typing import Optional, Tuple

import psutil


class IdentityLookupError(Exception):
    """
    The identity could not be determined.
    """


class IdentitySource(ABC):
    """
    Provides the (uid, gid) pair of the step process.
    """

    @abstractmethod
    def lookup(self) -> Optional[Tuple[int, int]]:
        """
        :return: User and group id, or None if the platform has no such notion.
        :raises IdentityLookupError: If the lookup failed.
        """


class ShellIdentitySource(IdentitySource):
    """
    Runs ``id -u`` and ``id -g``, like a shell step in the primary container would.
    """

    def __init__(self, timeout: float = 180.0):
        """
        :param timeout: Seconds to wait for each command.
        """
        self.timeout = timeout

    def lookup(self) -> Optional[Tuple[int, int]]:
        if os.name != "posix":
            return None
        return self._run_id("-u"), self._run_id("-g")

    def _run_id(self, flag: str) -> int:
        try:
            result = subprocess.run(
                ["id", flag],
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=True,
            )
        except subprocess.TimeoutExpired as e:
            raise IdentityLookupError(f"'id {flag}' timed out after {self.timeout} seconds") from e
        except (OSError, subprocess.CalledProcessError) as e:
            raise IdentityLookupError(f"'id {flag}' failed: {e}") from e

        output = result.stdout.strip()
        if not output.isdigit():
            raise IdentityLookupError(f"Unexpected output of 'id {flag}': {output!r}")
        return int(output)


class ProcessIdentitySource(IdentitySource):
    """
    Reads the effective ids of the current process.
    """

    def lookup(self) -> Optional[Tuple[int, int]]:
        process = psutil.Process()
        try:
            return process.uids().effective, process.gids().effective
        except AttributeError:
            # uids()/gids() only exist on POSIX
            return None
        except psutil.Error as e:
            raise IdentityLookupError(f"Could not read process ids: {e}") from e
