"""Docker-backed container engine.

The docker SDK is synchronous, so every call is pushed to a worker thread
with :func:`asyncio.to_thread` to keep the poll loop responsive.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from wskdebug_core.errors import BridgeError
from wskdebug_core.protocol import TIMEOUT_CONTAINER_STOP, ContainerHandle

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "wskdebug-"


class DockerEngine:
    """Starts and stops runtime containers through the local docker daemon."""

    def __init__(self, client: Any = None) -> None:
        self._client = client

    def _docker(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as exc:
                raise BridgeError(f"Docker is not available: {exc}") from exc
        return self._client

    # ------------------------------------------------------------------
    # ContainerEngine
    # ------------------------------------------------------------------

    async def start(
        self,
        image: str,
        *,
        command: list[str],
        mounts: dict[str, str],
        ports: dict[int, int | None],
        workdir: str | None = None,
        name: str | None = None,
    ) -> ContainerHandle:
        return await asyncio.to_thread(
            self._start_sync, image, command, mounts, ports, workdir, name,
        )

    async def stop(self, handle: ContainerHandle) -> None:
        await asyncio.to_thread(self._stop_sync, handle)

    # ------------------------------------------------------------------
    # Internal (runs in a worker thread)
    # ------------------------------------------------------------------

    def _ensure_image(self, image: str) -> None:
        client = self._docker()
        try:
            client.images.get(image)
        except ImageNotFound:
            logger.info("Pulling image %s (first use)...", image)
            client.images.pull(image)

    def _start_sync(
        self,
        image: str,
        command: list[str],
        mounts: dict[str, str],
        ports: dict[int, int | None],
        workdir: str | None,
        name: str | None,
    ) -> ContainerHandle:
        client = self._docker()
        self._ensure_image(image)

        name = name or f"{CONTAINER_PREFIX}{uuid.uuid4().hex[:12]}"
        volumes = {host: {"bind": target, "mode": "ro"} for host, target in mounts.items()}
        port_bindings = {
            f"{port}/tcp": ("127.0.0.1", host_port) if host_port else ("127.0.0.1", None)
            for port, host_port in ports.items()
        }

        try:
            container = client.containers.run(
                image,
                command=command,
                name=name,
                detach=True,
                auto_remove=False,
                volumes=volumes,
                ports=port_bindings,
                working_dir=workdir,
                labels={"wskdebug": "true"},
            )
            container.reload()
        except APIError as exc:
            self._remove_leftover(name)
            raise BridgeError(f"Could not start container from {image}: {exc}") from exc

        published: dict[int, int] = {}
        for port in ports:
            bindings = container.attrs["NetworkSettings"]["Ports"].get(f"{port}/tcp") or []
            if bindings:
                published[port] = int(bindings[0]["HostPort"])

        logger.info("Started container %s (%s) ports %s", name, image, published)
        return ContainerHandle(id=container.id, name=name, ports=published)

    def _remove_leftover(self, name: str) -> None:
        """Remove a container that was created but failed to start."""
        try:
            self._docker().containers.get(name).remove(force=True)
        except NotFound:
            return
        except APIError as exc:
            logger.warning("Could not remove leftover container %s: %s", name, exc)
            return
        logger.info("Removed leftover container %s", name)

    def _stop_sync(self, handle: ContainerHandle) -> None:
        client = self._docker()
        try:
            container = client.containers.get(handle.id)
        except NotFound:
            logger.debug("Container %s already gone", handle.name)
            return
        try:
            container.stop(timeout=TIMEOUT_CONTAINER_STOP)
        except APIError as exc:
            logger.debug("Stopping %s: %s", handle.name, exc)
        container.remove(force=True)
        logger.info("Removed container %s", handle.name)
