import json

import pytest

from vpnsync.commands import CommandExecutionError, CommandResult, CommandTimeoutError
from vpnsync.errors import (
    ExternalLogicalError,
    ExternalUserExists,
    ExternalUserNotFound,
    InfrastructureUnavailable,
    ValidationError,
)
from vpnsync.external_store import ExternalStoreClient, validate_username
from vpnsync.reconciler import Reconciler


class DummyRunner:
    """Replays canned results keyed on the sacli sub-command."""

    def __init__(self, users=None) -> None:
        self.users = dict(users or {})
        self.commands = []
        self.timeouts = []
        self.failures = {}
        self.error = None

    def run(self, args, timeout: float = 30.0) -> CommandResult:
        args = list(args)
        self.commands.append(args)
        self.timeouts.append(timeout)
        if self.error is not None:
            raise self.error
        verb = args[-1]
        if verb in self.failures:
            return CommandResult(command=args, exit_status=1, stdout="", stderr=self.failures[verb])
        if verb == "UserPropGet":
            if "--pfilt" in args:
                name = args[args.index("--pfilt") + 1]
                records = {name: self.users[name]} if name in self.users else {}
            else:
                records = self.users
            return CommandResult(command=args, exit_status=0, stdout=json.dumps(records), stderr="")
        return CommandResult(command=args, exit_status=0, stdout="", stderr="")


def test_list_usernames_filters_defaults_and_groups():
    runner = DummyRunner(
        {
            "__DEFAULT__": {"prop_autologin": "false"},
            "ops": {"type": "group"},
            "zoe": {"type": "user_connect"},
            "alice": {"type": "user_connect"},
        }
    )
    client = ExternalStoreClient(runner, timeout=12)

    assert client.list_usernames() == ["alice", "zoe"]
    assert runner.commands == [["sacli", "UserPropGet"]]
    assert runner.timeouts == [12]


def test_list_usernames_handles_empty_output():
    runner = DummyRunner()
    runner.run = lambda args, timeout=30.0: CommandResult(command=args, exit_status=0, stdout="  ", stderr="")

    assert ExternalStoreClient(runner).list_usernames() == []


def test_list_usernames_rejects_garbage_output():
    runner = DummyRunner()
    runner.run = lambda args, timeout=30.0: CommandResult(command=args, exit_status=0, stdout="oops", stderr="")

    with pytest.raises(ExternalLogicalError):
        ExternalStoreClient(runner).list_usernames()


def test_create_user_sets_password_before_properties():
    runner = DummyRunner()
    client = ExternalStoreClient(runner, sacli="/usr/local/openvpn_as/scripts/sacli")

    created = client.create_user("erin", "S3cret-temp", {"prop_email": "erin@example.com"})

    assert created is True
    sacli = "/usr/local/openvpn_as/scripts/sacli"
    assert runner.commands == [
        [sacli, "--pfilt", "erin", "UserPropGet"],
        [sacli, "--user", "erin", "--new_pass", "S3cret-temp", "SetLocalPassword"],
        [sacli, "--user", "erin", "--key", "type", "--value", "user_connect", "UserPropPut"],
        [sacli, "--user", "erin", "--key", "prop_email", "--value", "erin@example.com", "UserPropPut"],
    ]


class SacliRunner:
    """Keeps user records like sacli does; listed verbs fail once then succeed."""

    def __init__(self) -> None:
        self.records = {}
        self.passwords = {}
        self.fail_once = {}
        self.commands = []

    def run(self, args, timeout: float = 30.0) -> CommandResult:
        args = list(args)
        self.commands.append(args)
        verb = args[-1]
        if verb in self.fail_once:
            return CommandResult(command=args, exit_status=1, stdout="", stderr=self.fail_once.pop(verb))
        if verb == "UserPropGet":
            if "--pfilt" in args:
                name = args[args.index("--pfilt") + 1]
                records = {name: self.records[name]} if name in self.records else {}
            else:
                records = self.records
            return CommandResult(command=args, exit_status=0, stdout=json.dumps(records), stderr="")
        user = args[args.index("--user") + 1]
        if verb == "SetLocalPassword":
            self.records.setdefault(user, {})
            self.passwords[user] = args[args.index("--new_pass") + 1]
        elif verb == "UserPropPut":
            self.records.setdefault(user, {})[args[args.index("--key") + 1]] = args[args.index("--value") + 1]
        elif verb == "UserPropDelAll":
            self.records.pop(user, None)
            self.passwords.pop(user, None)
        return CommandResult(command=args, exit_status=0, stdout="", stderr="")


def test_rejected_password_leaves_no_record_behind():
    runner = SacliRunner()
    runner.fail_once["SetLocalPassword"] = "password policy violation"
    client = ExternalStoreClient(runner)

    with pytest.raises(ExternalLogicalError):
        client.create_user("erin", "weak", {"prop_email": "erin@example.com"})

    assert client.list_usernames() == []
    assert not any(command[-1] == "UserPropPut" for command in runner.commands)


def test_failed_property_write_rolls_back_created_user():
    runner = SacliRunner()
    runner.fail_once["UserPropPut"] = "permission denied"
    client = ExternalStoreClient(runner)

    with pytest.raises(ExternalLogicalError):
        client.create_user("erin", "S3cret-temp", {"prop_email": "erin@example.com"})

    assert runner.commands[-1] == ["sacli", "--user", "erin", "UserPropDelAll"]
    assert runner.records == {}
    assert runner.passwords == {}


def test_failed_create_is_retried_as_create_on_next_run(directory):
    directory.create_user("erin@example.com", "Erin", username="erin", email_verified=True)
    runner = SacliRunner()
    runner.fail_once["SetLocalPassword"] = "password policy violation"
    reconciler = Reconciler(directory, ExternalStoreClient(runner), password_factory=lambda: "temp-pass-0001")

    first = reconciler.run()
    second = reconciler.run()

    assert first.run.created == ()
    assert [entry.username for entry in first.run.errors] == ["erin"]
    assert second.run.created == ("erin",)
    assert second.run.errors == ()
    assert second.credentials == {"erin": "temp-pass-0001"}
    assert runner.passwords["erin"] == "temp-pass-0001"
    assert runner.records["erin"]["type"] == "user_connect"


def test_create_existing_user_updates_without_resetting_password():
    runner = DummyRunner({"erin": {"type": "user_connect"}})
    client = ExternalStoreClient(runner)

    assert client.create_user("erin", "S3cret-temp", {"prop_superuser": "false"}) is False
    assert not any("SetLocalPassword" in command for command in runner.commands)
    assert runner.commands[-1][-1] == "UserPropPut"


def test_delete_user_requires_existing_record():
    runner = DummyRunner({"dave": {"type": "user_connect"}})
    client = ExternalStoreClient(runner)

    client.delete_user("dave")
    assert runner.commands[-1] == ["sacli", "--user", "dave", "UserPropDelAll"]

    with pytest.raises(ExternalUserNotFound):
        client.delete_user("nobody")


def test_transport_failures_become_infrastructure_unavailable():
    runner = DummyRunner()
    runner.error = CommandExecutionError("Container 'openvpn-as' is not running (status: exited)")

    with pytest.raises(InfrastructureUnavailable) as excinfo:
        ExternalStoreClient(runner).list_usernames()
    assert "not running" in str(excinfo.value)

    runner.error = CommandTimeoutError(["sacli", "UserPropGet"], 30)
    with pytest.raises(InfrastructureUnavailable):
        ExternalStoreClient(runner).list_usernames()


@pytest.mark.parametrize(
    ("stderr", "expected"),
    [
        ("User erin already exists", ExternalUserExists),
        ("error: no such user erin", ExternalUserNotFound),
        ("permission denied", ExternalLogicalError),
    ],
)
def test_non_zero_exit_is_classified(stderr, expected):
    runner = DummyRunner()
    runner.failures["UserPropPut"] = stderr
    client = ExternalStoreClient(runner)

    with pytest.raises(expected) as excinfo:
        client.update_user("erin", {"prop_email": "erin@example.com"})
    assert excinfo.value.username == "erin"


def test_invalid_input_is_rejected_before_running_commands():
    runner = DummyRunner()
    client = ExternalStoreClient(runner)

    with pytest.raises(ValidationError):
        client.create_user("-rf", "pw", {})
    with pytest.raises(ValidationError):
        client.set_password("erin", "line\nbreak")
    with pytest.raises(ValidationError):
        client.update_user("erin", {"bad key": "x"})
    assert runner.commands == []


def test_validate_username_strips_whitespace():
    assert validate_username("  alice.smith@corp ") == "alice.smith@corp"
    with pytest.raises(ValidationError):
        validate_username("a" * 65)
