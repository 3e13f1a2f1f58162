import sys
import threading
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from vpnsync.directory import Directory
from vpnsync.errors import ExternalLogicalError, ExternalUserNotFound, InfrastructureUnavailable
from vpnsync.history import SyncHistory
from vpnsync.reconciler import Reconciler
from vpnsync.scheduler import Scheduler
from vpnsync.service import SyncService


class FakeExternalStore:
    """In-memory stand-in for the access server user database."""

    def __init__(self, usernames=()) -> None:
        self.users: Dict[str, Dict[str, str]] = {name: {} for name in usernames}
        self.passwords: Dict[str, str] = {}
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.unavailable = False
        self.unavailable_after: Optional[int] = None
        self.gate: Optional[threading.Event] = None
        self.entered = threading.Event()
        self._mutations = 0

    def _check(self) -> None:
        if self.unavailable:
            raise InfrastructureUnavailable("Failed to reach access server: container is not running")

    def _mutate(self, username: str) -> None:
        self._check()
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(5)
        if self.unavailable_after is not None and self._mutations >= self.unavailable_after:
            raise InfrastructureUnavailable("Failed to reach access server: connection reset")
        self._mutations += 1
        failure = self.failures.get(username)
        if failure is not None:
            raise failure

    def list_usernames(self) -> List[str]:
        self._check()
        self.calls.append(("list",))
        return sorted(self.users)

    def create_user(self, username: str, password: str, attributes: Mapping[str, str]) -> bool:
        self._mutate(username)
        self.calls.append(("create", username))
        if username in self.users:
            self.users[username].update(attributes)
            return False
        self.users[username] = dict(attributes)
        self.passwords[username] = password
        return True

    def update_user(self, username: str, attributes: Mapping[str, str]) -> None:
        self._mutate(username)
        self.calls.append(("update", username))
        if username not in self.users:
            raise ExternalLogicalError(f"Failed to update '{username}'", username=username)
        self.users[username].update(attributes)

    def set_password(self, username: str, password: str) -> None:
        self._mutate(username)
        self.calls.append(("set_password", username))
        self.passwords[username] = password

    def delete_user(self, username: str) -> None:
        self._mutate(username)
        self.calls.append(("delete", username))
        if username not in self.users:
            raise ExternalUserNotFound(f"Access server user '{username}' not found", username=username)
        del self.users[username]
        self.passwords.pop(username, None)

    def mutations(self) -> List[tuple]:
        return [call for call in self.calls if call[0] != "list"]


@pytest.fixture
def directory(tmp_path) -> Directory:
    database = Directory(tmp_path / "directory.sqlite3")
    database.initialize()
    return database


@pytest.fixture
def store() -> FakeExternalStore:
    return FakeExternalStore()


@pytest.fixture
def reconciler(directory, store) -> Reconciler:
    counter = iter(range(1, 10_000))
    return Reconciler(directory, store, password_factory=lambda: f"temp-pass-{next(counter):04d}")


@pytest.fixture
def scheduler(reconciler):
    sched = Scheduler(reconciler, history=SyncHistory(max_entries=10), seconds_per_minute=0.02)
    yield sched
    if sched.is_running:
        sched.stop(wait=True, timeout=2)


@pytest.fixture
def service(directory, reconciler, scheduler) -> SyncService:
    return SyncService(directory, reconciler, scheduler)


@pytest.fixture
def scenario(directory, store):
    """alice (verified), bob (unverified), carol (no username); access server has alice and dave."""

    alice = directory.create_user("alice@example.com", "Alice", username="alice", email_verified=True)
    bob = directory.create_user("bob@example.com", "Bob", username="bob")
    carol = directory.create_user("carol@example.com", "Carol", email_verified=True)
    store.users.update({"alice": {}, "dave": {}})
    return {"alice": alice, "bob": bob, "carol": carol}
