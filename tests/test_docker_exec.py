import pytest
import requests
from docker.errors import APIError, DockerException, NotFound

from vpnsync.commands import CommandExecutionError, CommandTimeoutError
from vpnsync.docker_exec import DockerExecRunner


class DummyContainer:
    def __init__(self, *, status="running", result=(0, (b"ok\n", None)), error=None) -> None:
        self.status = status
        self.result = result
        self.error = error
        self.executed = []

    def exec_run(self, cmd, demux=False):
        self.executed.append((cmd, demux))
        if self.error is not None:
            raise self.error
        return self.result


class DummyContainers:
    def __init__(self, container) -> None:
        self._container = container

    def get(self, name):
        if self._container is None:
            raise NotFound(f"No such container: {name}")
        return self._container


class DummyClient:
    def __init__(self, container) -> None:
        self.containers = DummyContainers(container)
        self.closed = False

    def close(self) -> None:
        self.closed = True


def _runner(container, clients=None, timeouts=None):
    def factory(timeout):
        if timeouts is not None:
            timeouts.append(timeout)
        client = DummyClient(container)
        if clients is not None:
            clients.append(client)
        return client

    return DockerExecRunner("openvpn-as", client_factory=factory)


def test_run_executes_in_container_and_decodes_output():
    container = DummyContainer(result=(0, (b'{"alice": {}}', b"warning\n")))
    clients, timeouts = [], []

    result = _runner(container, clients, timeouts).run(["sacli", "UserPropGet"], timeout=7)

    assert container.executed == [(["sacli", "UserPropGet"], True)]
    assert result.exit_status == 0
    assert result.stdout == '{"alice": {}}'
    assert result.stderr == "warning\n"
    assert timeouts == [7]
    assert clients[0].closed is True


def test_non_zero_exit_is_returned_not_raised():
    container = DummyContainer(result=(1, (None, b"User not found\n")))

    result = _runner(container).run(["sacli", "--user", "x", "UserPropDelAll"])

    assert result.ok is False
    assert result.output() == "User not found"


def test_missing_container_raises_execution_error():
    with pytest.raises(CommandExecutionError) as excinfo:
        _runner(None).run(["sacli", "UserPropGet"])
    assert "was not found" in str(excinfo.value)


def test_stopped_container_raises_execution_error():
    clients = []
    with pytest.raises(CommandExecutionError) as excinfo:
        _runner(DummyContainer(status="exited"), clients).run(["sacli", "UserPropGet"])
    assert "not running" in str(excinfo.value)
    assert clients[0].closed is True


def test_daemon_unavailable_raises_execution_error():
    def factory(_timeout):
        raise DockerException("Error while fetching server API version")

    runner = DockerExecRunner("openvpn-as", client_factory=factory)

    with pytest.raises(CommandExecutionError) as excinfo:
        runner.run(["sacli", "UserPropGet"])
    assert "Docker daemon is unavailable" in str(excinfo.value)


def test_read_timeout_raises_timeout_error():
    container = DummyContainer(error=requests.exceptions.ReadTimeout("read timed out"))

    with pytest.raises(CommandTimeoutError) as excinfo:
        _runner(container).run(["sacli", "UserPropGet"], timeout=3)
    assert excinfo.value.timeout == 3


def test_api_error_raises_execution_error():
    container = DummyContainer(error=APIError("conflict"))

    with pytest.raises(CommandExecutionError):
        _runner(container).run(["sacli", "UserPropGet"])


def test_empty_command_and_container_name_are_rejected():
    with pytest.raises(CommandExecutionError):
        _runner(DummyContainer()).run([])
    with pytest.raises(ValueError):
        DockerExecRunner("  ")
