"""Run commands inside the access server container through the Docker Engine API."""
from __future__ import annotations

import logging
from typing import Callable, Optional, Sequence

import docker
import requests
from docker.errors import DockerException, NotFound

from .commands import CommandExecutionError, CommandResult, CommandTimeoutError

logger = logging.getLogger("vpnsync.docker_exec")

ClientFactory = Callable[[float], "docker.DockerClient"]


def _decode(chunk: Optional[bytes]) -> str:
    if not chunk:
        return ""
    return chunk.decode("utf-8", errors="replace")


class DockerExecRunner:
    """Executes argv lists in a running container using ``docker exec``.

    A fresh client is created per command so that the per-call timeout is
    applied to the underlying HTTP connection; a hung ``exec`` therefore
    surfaces as :class:`CommandTimeoutError` instead of blocking the caller.
    """

    def __init__(
        self,
        container_name: str,
        *,
        docker_host: str | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        cleaned = container_name.strip()
        if not cleaned:
            raise ValueError("Container name must not be empty")
        self._container_name = cleaned
        self._docker_host = docker_host
        self._client_factory = client_factory or self._default_client

    @property
    def container_name(self) -> str:
        return self._container_name

    def _default_client(self, timeout: float) -> "docker.DockerClient":
        if self._docker_host:
            return docker.DockerClient(base_url=self._docker_host, timeout=int(timeout) or 1)
        return docker.from_env(timeout=int(timeout) or 1)

    def run(self, args: Sequence[str], timeout: float = 30.0) -> CommandResult:
        command = [str(part) for part in args]
        if not command:
            raise CommandExecutionError("Command must not be empty")

        try:
            client = self._client_factory(timeout)
        except DockerException as exc:
            raise CommandExecutionError(f"Docker daemon is unavailable: {exc}") from exc

        try:
            try:
                container = client.containers.get(self._container_name)
            except NotFound as exc:
                raise CommandExecutionError(
                    f"Container '{self._container_name}' was not found"
                ) from exc

            if container.status != "running":
                raise CommandExecutionError(
                    f"Container '{self._container_name}' is not running (status: {container.status})"
                )

            logger.debug("docker exec %s %s", self._container_name, command[0])
            exit_code, output = container.exec_run(command, demux=True)
        except requests.exceptions.Timeout as exc:
            raise CommandTimeoutError(command, timeout) from exc
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise CommandExecutionError(
                f"Failed to execute command in container '{self._container_name}': {exc}"
            ) from exc
        finally:
            client.close()

        stdout, stderr = output if isinstance(output, tuple) else (output, None)
        return CommandResult(
            command=tuple(command),
            exit_status=int(exit_code) if exit_code is not None else -1,
            stdout=_decode(stdout),
            stderr=_decode(stderr),
        )


__all__ = ["DockerExecRunner"]
