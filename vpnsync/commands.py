"""Command execution primitives shared by the container transports."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence


class CommandExecutionError(RuntimeError):
    """Raised when a command could not be delivered to its environment."""


class CommandTimeoutError(CommandExecutionError):
    """Raised when a command does not complete within its timeout."""

    def __init__(self, command: Sequence[str], timeout: float) -> None:
        super().__init__(f"Command '{' '.join(command)}' timed out after {timeout:g} seconds")
        self.command = tuple(command)
        self.timeout = timeout


@dataclass
class CommandResult:
    """Result of a command executed inside the isolated environment."""

    command: Sequence[str]
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0

    def output(self) -> str:
        """Return the most useful diagnostic text for the result."""

        for text in (self.stderr, self.stdout):
            cleaned = text.strip()
            if cleaned:
                return cleaned
        return f"exit status {self.exit_status}"


class CommandRunner(Protocol):
    """Anything able to execute an argv list inside the external environment."""

    def run(self, args: Sequence[str], timeout: float = 30.0) -> CommandResult:  # pragma: no cover - protocol
        ...


__all__ = [
    "CommandExecutionError",
    "CommandTimeoutError",
    "CommandResult",
    "CommandRunner",
]
