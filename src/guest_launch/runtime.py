import logging
from typing import Optional, Protocol

import docker
import requests
from docker.errors import APIError, DockerException, NotFound
from docker.models.containers import Container

from .models import ContainerStatus, PortProtocol

logger = logging.getLogger(__name__)

# docker reports these container states; everything else is treated as an error
DOCKER_STATUS_MAP = {
    "created": ContainerStatus.STOPPED,
    "exited": ContainerStatus.STOPPED,
    "dead": ContainerStatus.STOPPED,
    "restarting": ContainerStatus.STARTING,
    "running": ContainerStatus.RUNNING,
    "paused": ContainerStatus.PAUSED,
    "removing": ContainerStatus.ERROR,
}


class RuntimeActionError(Exception):
    """Raised when a container power action fails."""


class ContainerRuntime(Protocol):
    def status(self) -> ContainerStatus: ...

    def start(self) -> None: ...

    def unpause(self) -> None: ...

    def published_port(self, guest_port: int, protocol: PortProtocol = "tcp") -> Optional[int]: ...


class DockerRuntime:
    """Power control for the guest container through the Docker Engine API."""

    def __init__(self, container_name: str, base_url: str | None = None, client: docker.DockerClient | None = None):
        self.container_name = container_name
        if client is not None:
            self.client = client
        else:
            try:
                self.client = docker.DockerClient(base_url=base_url) if base_url else docker.from_env()
            except DockerException as e:
                raise RuntimeActionError(f"Could not connect to Docker Daemon: {e}") from e

    def _container(self) -> Container | None:
        try:
            return self.client.containers.get(self.container_name)
        except NotFound:
            return None
        except (APIError, requests.exceptions.ConnectionError) as e:
            raise RuntimeActionError(f"Could not inspect container '{self.container_name}': {e}") from e

    def _require_container(self) -> Container:
        container = self._container()
        if container is None:
            raise RuntimeActionError(f"Container '{self.container_name}' does not exist")
        return container

    def status(self) -> ContainerStatus:
        container = self._container()
        if container is None:
            logger.warning("Container '%s' not found", self.container_name)
            return ContainerStatus.ERROR
        return DOCKER_STATUS_MAP.get(container.status, ContainerStatus.ERROR)

    def _act(self, action: str) -> None:
        container = self._require_container()
        logger.info("Container '%s': %s", self.container_name, action)
        try:
            getattr(container, action)()
        except (APIError, requests.exceptions.ConnectionError) as e:
            raise RuntimeActionError(f"Failed to {action} container '{self.container_name}': {e}") from e

    def start(self) -> None:
        self._act("start")

    def stop(self) -> None:
        self._act("stop")

    def pause(self) -> None:
        self._act("pause")

    def unpause(self) -> None:
        self._act("unpause")

    def published_port(self, guest_port: int, protocol: PortProtocol = "tcp") -> Optional[int]:
        """Host port the runtime actually bound for ``guest_port``, if published."""
        container = self._container()
        if container is None:
            return None

        ports = container.attrs.get("NetworkSettings", {}).get("Ports") or {}
        bindings = ports.get(f"{guest_port}/{protocol}")
        if not bindings:
            return None

        return int(bindings[0]["HostPort"])
