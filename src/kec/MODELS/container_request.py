"""
Models describing the ephemeral container a step asks for.
"""
import hashlib
import re
import shlex
from typing import Optional, Tuple, Any
from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class EnvVar(BaseModel):
    """
    Environment variable for the ephemeral container, either a literal value
    or a reference to a key of a Secret in the Pod namespace.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    value: Optional[str] = None
    secret_name: Optional[str] = None
    secret_key: Optional[str] = None
    optional: bool = False

    @model_validator(mode="after")
    def _check_source(self) -> "EnvVar":
        if not self.name:
            raise ValueError("Environment variable name is mandatory")
        if (self.secret_name is None) != (self.secret_key is None):
            raise ValueError(
                f"Environment variable {self.name} needs both secret_name and secret_key"
            )
        if self.secret_name is not None and self.value is not None:
            raise ValueError(
                f"Environment variable {self.name} cannot have a value and a secret reference"
            )
        return self

    @property
    def is_secret(self) -> bool:
        return self.secret_name is not None


class ContainerRequest(BaseModel):
    """
    Immutable description of the ephemeral container to add to the Pod.

    ``command`` distinguishes three cases: ``None`` keeps the image entrypoint,
    an empty tuple overrides the entrypoint with nothing and a non-empty tuple
    is an explicit command.
    """
    model_config = ConfigDict(frozen=True)

    image: str
    command: Optional[Tuple[str, ...]] = None
    env_vars: Tuple[EnvVar, ...] = ()
    target_container: Optional[str] = None
    always_pull_image: bool = True
    run_as_user: Optional[int] = None
    run_as_group: Optional[int] = None
    shell: Optional[str] = None

    @field_validator("image")
    @classmethod
    def _validate_image(cls, value: str) -> str:
        if not value or not re.fullmatch(r"\S+", value):
            raise ValueError(f"Invalid container image name: '{value}'")
        return value

    @field_validator("target_container", "shell", mode="before")
    @classmethod
    def _fix_empty(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("run_as_user", "run_as_group", mode="before")
    @classmethod
    def _parse_run_as_id(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
            if not value.isdigit():
                raise ValueError(f"Invalid run as id: '{value}'")
            return int(value)
        if isinstance(value, int) and value < 0:
            raise ValueError(f"Invalid run as id: '{value}'")
        return value

    @field_validator("env_vars")
    @classmethod
    def _unique_env_names(cls, value: Tuple[EnvVar, ...]) -> Tuple[EnvVar, ...]:
        seen = set()
        for env_var in value:
            if env_var.name in seen:
                raise ValueError(f"Duplicate environment variable: {env_var.name}")
            seen.add(env_var.name)
        return value

    @classmethod
    def from_command_line(cls, image: str, command_line: Optional[str], **kwargs) -> "ContainerRequest":
        """
        Create a request from a single command string split with shell rules.

        :param image: Container image reference.
        :param command_line: Full command line, None to keep the image entrypoint.
        """
        command = None if command_line is None else tuple(shlex.split(command_line))
        return cls(image=image, command=command, **kwargs)

    def stable_hash(self) -> str:
        """
        Short hex digest that is identical for equal requests across processes.
        """
        return hashlib.sha1(self.model_dump_json().encode("utf-8")).hexdigest()[:8]
