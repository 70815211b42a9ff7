"""
Reference to the Pod an ephemeral container is added to.
"""
from pydantic import BaseModel, ConfigDict


class WorkloadRef(BaseModel):
    """
    Identifies the host Pod and the cloud configuration it was provisioned by.
    """
    model_config = ConfigDict(frozen=True)

    namespace: str = "default"
    name: str
    cloud: str = "kubernetes"

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"
