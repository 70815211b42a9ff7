"""
Tunables for the provisioning controller.
"""
import os
from typing import ClassVar, Dict, Optional
from dotenv import dotenv_values
from pydantic import BaseModel, Field


class ControllerSettings(BaseModel):
    """
    Retry, timeout and naming settings. Every field can be overridden with a
    ``KEC_<FIELD>`` environment variable, see :meth:`from_env`.
    """
    ENV_PREFIX: ClassVar[str] = "KEC_"

    # Pod patch conflicts
    patch_max_retry: int = Field(default=10, ge=0)
    patch_retry_max_wait: float = Field(default=2.0, ge=0)

    # Container start failures
    start_max_retry: int = Field(default=3, ge=0)
    start_retry_max_wait: float = Field(default=2.0, ge=0)

    # Timeouts, in seconds
    identity_timeout: float = Field(default=180.0, gt=0)
    ready_timeout: float = Field(default=100.0, gt=0)
    ready_poll_interval: float = Field(default=1.0, gt=0)
    stop_timeout: float = Field(default=10.0, gt=0)
    exec_timeout: float = Field(default=30.0, gt=0)

    # Container spec
    monitor_poll_interval: int = 1
    primary_container_name: str = "agent"
    name_prefix: str = "step"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "ControllerSettings":
        """
        Builds settings from ``KEC_*`` variables. Values from the process
        environment override the ones read from the optional .env file.

        :param env_file: Path to a .env file.
        :return: Settings with defaults for everything not configured.
        """
        source: Dict[str, Optional[str]] = {}
        if env_file and os.path.exists(env_file):
            source.update(dotenv_values(env_file))
        source.update(os.environ)

        values = {}
        for name in cls.model_fields:
            raw = source.get(cls.ENV_PREFIX + name.upper())
            if raw is not None and raw != "":
                values[name] = raw
        return cls(**values)
