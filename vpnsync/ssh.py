"""SSH transport for access servers whose container runs on a remote Docker host."""
from __future__ import annotations

import shlex
import socket
from contextlib import contextmanager
from dataclasses import dataclass
from io import StringIO
from pathlib import Path
from typing import Generator, Optional, Sequence

import paramiko

from .commands import CommandExecutionError, CommandResult, CommandTimeoutError

# docker exec reserves these exit codes for failures of docker itself
_DOCKER_EXEC_FAILURE_CODES = {125, 126, 127}


class SSHError(CommandExecutionError):
    """Raised when an SSH operation fails."""


class HostKeyVerificationError(SSHError):
    """Raised when host key verification fails for a remote host."""

    def __init__(self, hostname: str, *, port: int | None = None, suggestion: str | None = None) -> None:
        base = f"Host key verification failed for {hostname}"
        if port is not None:
            base += f":{port}"
        base += "."
        if suggestion:
            base = f"{base} {suggestion}".strip()
        super().__init__(base)
        self.hostname = hostname
        self.port = port
        self.suggestion = suggestion


@dataclass
class SSHTarget:
    """Connection parameters for the remote Docker host."""

    hostname: str
    port: int
    username: str
    private_key: str
    passphrase: Optional[str] = None
    allow_unknown_hosts: bool = False
    known_hosts_path: Optional[Path] = None


def _load_private_key(private_key: str, passphrase: str | None) -> paramiko.PKey:
    key_classes = (
        paramiko.Ed25519Key,
        paramiko.ECDSAKey,
        paramiko.RSAKey,
    )
    cleaned = private_key.strip()

    if "-----BEGIN" in cleaned:
        last_error: Exception | None = None
        for key_cls in key_classes:
            stream = StringIO(cleaned)
            try:
                return key_cls.from_private_key(stream, password=passphrase)
            except paramiko.PasswordRequiredException as exc:
                raise SSHError("The private key is encrypted and requires a passphrase") from exc
            except paramiko.SSHException as exc:
                last_error = exc
        raise SSHError("Unable to load private key - unsupported format or invalid passphrase") from last_error

    path = Path(cleaned).expanduser()
    for key_cls in key_classes:
        try:
            return key_cls.from_private_key_file(str(path), password=passphrase)
        except FileNotFoundError as exc:
            raise SSHError(f"Private key file not found: {path}") from exc
        except paramiko.PasswordRequiredException as exc:
            raise SSHError("The private key is encrypted and requires a passphrase") from exc
        except paramiko.SSHException:
            continue
    raise SSHError("Unable to load private key - unsupported format or invalid passphrase")


class SSHClientFactory:
    """Factory that builds SSH clients for the configured target."""

    def __init__(self, target: SSHTarget, *, connect_timeout: float = 20) -> None:
        self._target = target
        self._connect_timeout = connect_timeout

    @property
    def target(self) -> SSHTarget:
        return self._target

    @contextmanager
    def connect(self) -> Generator[paramiko.SSHClient, None, None]:
        client = paramiko.SSHClient()
        if self._target.known_hosts_path:
            client.load_host_keys(str(self._target.known_hosts_path))
        else:
            client.load_system_host_keys()

        if self._target.allow_unknown_hosts:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.RejectPolicy())

        pkey = _load_private_key(self._target.private_key, self._target.passphrase)
        try:
            client.connect(
                hostname=self._target.hostname,
                port=self._target.port,
                username=self._target.username,
                pkey=pkey,
                timeout=self._connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
            yield client
        except paramiko.AuthenticationException as exc:
            raise SSHError("Authentication with the Docker host failed") from exc
        except paramiko.BadHostKeyException as exc:
            raise HostKeyVerificationError(
                exc.hostname,
                port=self._target.port,
                suggestion="The host key differs from the entry stored in the known hosts file.",
            ) from exc
        except paramiko.SSHException as exc:
            message = str(exc)
            if "not found in known_hosts" in message:
                raise HostKeyVerificationError(
                    self._target.hostname,
                    port=self._target.port,
                    suggestion="Add the host to the configured known hosts file or enable allow_unknown_hosts.",
                ) from exc
            raise SSHError(f"SSH connection failed: {message}") from exc
        except OSError as exc:
            raise SSHError(f"Unable to connect to {self._target.hostname}:{self._target.port}: {exc}") from exc
        finally:
            client.close()


class SSHDockerExecRunner:
    """Runs ``docker exec <container> ...`` on a remote host over SSH."""

    def __init__(self, factory: SSHClientFactory, container_name: str) -> None:
        cleaned = container_name.strip()
        if not cleaned:
            raise ValueError("Container name must not be empty")
        self._factory = factory
        self._container_name = cleaned

    @property
    def container_name(self) -> str:
        return self._container_name

    def run(self, args: Sequence[str], timeout: float = 30.0) -> CommandResult:
        argv = [str(part) for part in args]
        if not argv:
            raise SSHError("Command must not be empty")

        remote = ["docker", "exec", self._container_name, *argv]
        command = " ".join(shlex.quote(part) for part in remote)
        with self._factory.connect() as client:
            try:
                _stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
                stdout_text = stdout.read().decode("utf-8", errors="replace")
                stderr_text = stderr.read().decode("utf-8", errors="replace")
                exit_status = stdout.channel.recv_exit_status()
            except socket.timeout as exc:
                raise CommandTimeoutError(argv, timeout) from exc
            except paramiko.SSHException as exc:
                raise SSHError(f"Failed to execute remote command: {exc}") from exc

        if exit_status in _DOCKER_EXEC_FAILURE_CODES:
            detail = stderr_text.strip() or f"docker exec exited with status {exit_status}"
            raise SSHError(f"docker exec failed on {self._factory.target.hostname}: {detail}")

        return CommandResult(command=tuple(argv), exit_status=exit_status, stdout=stdout_text, stderr=stderr_text)


__all__ = [
    "SSHError",
    "HostKeyVerificationError",
    "SSHTarget",
    "SSHClientFactory",
    "SSHDockerExecRunner",
]
