from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class SandboxHandle:
    """Identity of one sandbox: which image, container, session and buffer it uses.

    Passed explicitly to every operation so two handles never share state by
    accident. Build one from config with SandboxHandle.from_config().
    """

    name: str
    image: str
    host_dir: str
    tag: str = "latest"
    session: str = "sandbox"
    history_path: str = "/tmp/shellbox-history"
    dockerfile: str = "Dockerfile"
    sandbox_dockerfile: str = "Dockerfile-sandbox"

    @property
    def image_ref(self):
        return f"{self.image}:{self.tag}"

    @classmethod
    def from_config(cls, config):
        return cls(
            name=config["sandbox_name"],
            image=config["image"],
            host_dir=config["host_dir"],
            tag=config.get("tag") or "latest",
            session=config.get("session") or "sandbox",
            history_path=config.get("history_path") or "/tmp/shellbox-history",
            dockerfile=config.get("dockerfile") or "Dockerfile",
            sandbox_dockerfile=config.get("sandbox_dockerfile") or "Dockerfile-sandbox",
        )


@dataclass(frozen=True)
class ContainerInfo:
    id: str
    name: str
    state: str

    @property
    def running(self):
        return self.state == "running"


class Sandbox(ABC):
    """Base interface for sandbox backends.

    Implementations: DockerSandbox.
    """

    @abstractmethod
    def ensure(self):
        """Make sure exactly one running sandbox container exists. Returns ContainerInfo.

        Reuses a running container as-is; replaces a stopped one.
        """
        pass

    @abstractmethod
    def restart(self):
        """Rebuild the image and replace the container, whatever its state. Returns ContainerInfo."""
        pass

    @abstractmethod
    def status(self):
        """Return ContainerInfo for the sandbox container, or None if absent."""
        pass

    @abstractmethod
    def exec(self, argv, input=None):
        """Run argv as a new process in the container. Returns its stdout.

        Raises RuntimeAPIError on non-zero exit.
        """
        pass

    @abstractmethod
    def destroy(self):
        """Force-remove the sandbox container if it exists."""
        pass
