from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Protocol, Sequence

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from mailrestore.core.errors import RuntimeUnavailableError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Mount:
    # Host path or named volume mounted into a helper container.
    source: str
    target: str
    read_only: bool = True


@dataclass(frozen=True)
class HelperResult:
    # Captured outcome of a one-shot helper command.
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ContainerRuntime(Protocol):
    # Seam over the container supervisor so staging and live steps are testable.
    def run_helper(self, image: str, script: str, *, mounts: Sequence[Mount] = ()) -> HelperResult:
        ...

    def start_detached(
        self,
        image: str,
        command: Sequence[str],
        *,
        name: str,
        mounts: Sequence[Mount] = (),
    ) -> str:
        ...

    def is_running(self, container_id: str) -> bool:
        ...

    def logs(self, container_id: str, *, tail: int) -> str:
        ...

    def remove(self, container_id: str) -> None:
        ...

    def create_volume(self, name: str) -> str:
        ...

    def remove_volume(self, name: str) -> None:
        ...

    def volume_exists(self, name: str) -> bool:
        ...

    def service_running(self, name_filter: str) -> bool:
        ...

    def stop_service(self, name_filter: str) -> bool:
        ...

    def start_service(self, name_filter: str) -> bool:
        ...

    def restart_service(self, name_filter: str) -> bool:
        ...

    def exec_in_service(self, name_filter: str, command: Sequence[str]) -> HelperResult:
        ...


def _volumes(mounts: Sequence[Mount]) -> dict[str, dict[str, str]]:
    return {mount.source: {"bind": mount.target, "mode": "ro" if mount.read_only else "rw"} for mount in mounts}


def _decode(raw: bytes | None) -> str:
    return (raw or b"").decode("utf-8", errors="replace")


class DockerRuntime:
    """Container runtime backed by the local docker daemon."""

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        try:
            self._client = client or docker.from_env()
            self._client.ping()
        except DockerException as exc:
            raise RuntimeUnavailableError(
                f"cannot reach the docker daemon: {exc}",
                remediation="Run as a user with access to /var/run/docker.sock and check that docker is running.",
            ) from exc

    def run_helper(self, image: str, script: str, *, mounts: Sequence[Mount] = ()) -> HelperResult:
        # Run a throwaway, network-less bash helper and capture its output.
        try:
            container = self._client.containers.run(
                image,
                command=["bash", "-c", script],
                entrypoint="",
                volumes=_volumes(mounts),
                network_mode="none",
                detach=True,
            )
        except ImageNotFound as exc:
            raise RuntimeUnavailableError(
                f"helper image not available: {image}",
                remediation=f"Pull the image first: docker pull {image}",
            ) from exc
        except DockerException as exc:
            raise RuntimeUnavailableError(f"helper container failed to start: {exc}") from exc
        try:
            status = container.wait()
            stdout = _decode(container.logs(stdout=True, stderr=False))
            stderr = _decode(container.logs(stdout=False, stderr=True))
            return HelperResult(exit_code=int(status.get("StatusCode", 1)), stdout=stdout, stderr=stderr)
        except DockerException as exc:
            raise RuntimeUnavailableError(f"helper container failed: {exc}") from exc
        finally:
            try:
                container.remove(force=True)
            except DockerException as exc:  # leftover helper is harmless, keep the real result
                logger.warning("helper_remove_failed container=%s error=%s", container.id, exc)

    def start_detached(
        self,
        image: str,
        command: Sequence[str],
        *,
        name: str,
        mounts: Sequence[Mount] = (),
    ) -> str:
        # Start a long-running, network-isolated container and return its id.
        try:
            container = self._client.containers.run(
                image,
                command=list(command),
                entrypoint="",
                name=name,
                volumes=_volumes(mounts),
                network_mode="none",
                detach=True,
            )
        except DockerException as exc:
            raise RuntimeUnavailableError(f"container {name} failed to start: {exc}") from exc
        logger.info("container_started name=%s id=%s image=%s", name, container.short_id, image)
        return container.id

    def is_running(self, container_id: str) -> bool:
        try:
            container = self._client.containers.get(container_id)
        except NotFound:
            return False
        except DockerException as exc:
            raise RuntimeUnavailableError(f"cannot inspect container {container_id}: {exc}") from exc
        return container.status == "running"

    def logs(self, container_id: str, *, tail: int) -> str:
        try:
            container = self._client.containers.get(container_id)
            return _decode(container.logs(tail=tail))
        except DockerException as exc:  # logs are diagnostic only
            logger.warning("container_logs_unavailable container=%s error=%s", container_id, exc)
            return ""

    def remove(self, container_id: str) -> None:
        try:
            self._client.containers.get(container_id).remove(force=True)
        except NotFound:
            return
        except DockerException as exc:
            raise RuntimeUnavailableError(f"cannot remove container {container_id}: {exc}") from exc

    def create_volume(self, name: str) -> str:
        try:
            volume = self._client.volumes.create(name=name, labels={"mailrestore.staging": "1"})
        except DockerException as exc:
            raise RuntimeUnavailableError(f"cannot create volume {name}: {exc}") from exc
        return volume.name

    def remove_volume(self, name: str) -> None:
        try:
            self._client.volumes.get(name).remove(force=True)
        except NotFound:
            return
        except DockerException as exc:
            raise RuntimeUnavailableError(f"cannot remove volume {name}: {exc}") from exc

    def volume_exists(self, name: str) -> bool:
        try:
            self._client.volumes.get(name)
        except NotFound:
            return False
        except DockerException as exc:
            raise RuntimeUnavailableError(f"cannot inspect volume {name}: {exc}") from exc
        return True

    def _find_service(self, name_filter: str):
        # mailcow containers are named <project>-<service>-<n>; match on the service part.
        try:
            matches = self._client.containers.list(all=True, filters={"name": name_filter})
        except DockerException as exc:
            raise RuntimeUnavailableError(f"cannot list containers: {exc}") from exc
        if not matches:
            return None
        return sorted(matches, key=lambda item: item.name)[0]

    def service_running(self, name_filter: str) -> bool:
        container = self._find_service(name_filter)
        return container is not None and container.status == "running"

    def stop_service(self, name_filter: str) -> bool:
        container = self._find_service(name_filter)
        if container is None or container.status != "running":
            return False
        try:
            container.stop(timeout=30)
        except APIError as exc:
            raise RuntimeUnavailableError(f"failed to stop {container.name}: {exc}") from exc
        logger.info("service_stopped name=%s", container.name)
        return True

    def start_service(self, name_filter: str) -> bool:
        container = self._find_service(name_filter)
        if container is None:
            return False
        if container.status == "running":
            return True
        try:
            container.start()
        except APIError as exc:
            raise RuntimeUnavailableError(f"failed to start {container.name}: {exc}") from exc
        logger.info("service_started name=%s", container.name)
        return True

    def restart_service(self, name_filter: str) -> bool:
        container = self._find_service(name_filter)
        if container is None or container.status != "running":
            return False
        try:
            container.restart()
        except APIError as exc:
            raise RuntimeUnavailableError(f"failed to restart {container.name}: {exc}") from exc
        logger.info("service_restarted name=%s", container.name)
        return True

    def exec_in_service(self, name_filter: str, command: Sequence[str]) -> HelperResult:
        container = self._find_service(name_filter)
        if container is None or container.status != "running":
            return HelperResult(exit_code=127, stdout="", stderr=f"{name_filter} is not running")
        try:
            result = container.exec_run(list(command), demux=True)
        except APIError as exc:
            raise RuntimeUnavailableError(f"exec in {container.name} failed: {exc}") from exc
        stdout, stderr = result.output or (None, None)
        return HelperResult(exit_code=int(result.exit_code or 0), stdout=_decode(stdout), stderr=_decode(stderr))


def get_runtime() -> ContainerRuntime:
    # Allow tests to monkeypatch the container runtime without touching the orchestrator.
    return DockerRuntime()
