from .backend import SandboxBackend, SandboxProcess
from .docker_backend import DockerBackend

__all__ = [
    "DockerBackend",
    "SandboxBackend",
    "SandboxProcess",
]
