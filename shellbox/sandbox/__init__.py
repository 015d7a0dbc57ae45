from shellbox.sandbox.base import SandboxHandle
from shellbox.sandbox.docker import DockerSandbox


def create_sandbox(config, backend="docker", on_progress=None):
    handle = SandboxHandle.from_config(config)
    if backend == "docker":
        return DockerSandbox(handle, settle_time=config.get("settle_time", 1.0), on_progress=on_progress)
    raise ValueError(f"Unknown sandbox backend: {backend}")
