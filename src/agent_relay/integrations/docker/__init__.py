from .runtime import DockerRuntime, DockerRuntimeError, DockerUnavailableError
from .sandbox import SandboxManager, SandboxStatus

__all__ = [
    "DockerRuntime",
    "DockerRuntimeError",
    "DockerUnavailableError",
    "SandboxManager",
    "SandboxStatus",
]
