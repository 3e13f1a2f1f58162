"""Diff the user directory against the access server and apply the difference.

The reconciler works in two strictly separated phases:

* **plan** - read both stores once, classify every directory user and every
  external username, and turn the result into a list of actions;
* **apply** - hand each action to the external store client.

Dry runs execute the plan phase unchanged and skip the apply phase, so a dry
run reports exactly the actions a real run against the same data would take.
Actions are applied against the snapshot taken at the start of the run even if
the directory changes meanwhile; the next run picks up anything that drifted.
"""
from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from .directory import eligibility_problem
from .errors import (
    ExternalLogicalError,
    ServiceUnavailable,
    UserIneligible,
    UserNotFound,
    ValidationError,
)
from .external_store import PROP_DISPLAY_NAME, PROP_EMAIL, PROP_SUPERUSER, validate_username
from .models import (
    CreateAction,
    DeleteAction,
    DirectoryUser,
    RunTrigger,
    SingleUserSyncResult,
    SkippedUser,
    SyncAction,
    SyncResult,
    SyncRunRecorder,
    UpdateAction,
)

logger = logging.getLogger("vpnsync.reconciler")

TEMP_PASSWORD_LENGTH = 16
_TEMP_PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


class DirectoryReader(Protocol):
    def list_users(self) -> List[DirectoryUser]:  # pragma: no cover - protocol
        ...

    def get_by_id(self, user_id: int) -> Optional[DirectoryUser]:  # pragma: no cover - protocol
        ...


class ExternalStore(Protocol):
    def list_usernames(self) -> List[str]:  # pragma: no cover - protocol
        ...

    def create_user(self, username: str, password: str, attributes: Mapping[str, str]) -> bool:  # pragma: no cover
        ...

    def update_user(self, username: str, attributes: Mapping[str, str]) -> None:  # pragma: no cover
        ...

    def set_password(self, username: str, password: str) -> None:  # pragma: no cover
        ...

    def delete_user(self, username: str) -> None:  # pragma: no cover
        ...


def generate_temp_password(length: int = TEMP_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_TEMP_PASSWORD_ALPHABET) for _ in range(length))


def build_attributes(user: DirectoryUser) -> Dict[str, str]:
    """External attributes for ``user``; shared by full and single-user syncs."""

    attributes: Dict[str, str] = {}
    if user.email:
        attributes[PROP_EMAIL] = user.email
    if user.display_name:
        attributes[PROP_DISPLAY_NAME] = user.display_name
    attributes[PROP_SUPERUSER] = "true" if user.is_admin else "false"
    return attributes


@dataclass(frozen=True)
class SyncPlan:
    """Three-way partition of the two username sets plus skipped users."""

    directory_total: int
    external: Tuple[str, ...]
    to_create: Tuple[DirectoryUser, ...]
    to_update: Tuple[DirectoryUser, ...]
    orphaned: Tuple[str, ...]
    skipped: Tuple[SkippedUser, ...]

    @property
    def eligible_usernames(self) -> List[str]:
        return [user.username for user in (*self.to_create, *self.to_update) if user.username]


def plan_sync(users: Iterable[DirectoryUser], external_usernames: Iterable[str]) -> SyncPlan:
    """Compute ``D \\ E``, ``D & E`` and ``E \\ D`` for eligible directory users ``D``."""

    external: List[str] = []
    external_set: Set[str] = set()
    for name in external_usernames:
        if name not in external_set:
            external_set.add(name)
            external.append(name)

    to_create: List[DirectoryUser] = []
    to_update: List[DirectoryUser] = []
    skipped: List[SkippedUser] = []
    eligible: Set[str] = set()
    directory_total = 0

    for user in users:
        directory_total += 1
        problem = eligibility_problem(user)
        if problem is not None:
            skipped.append(SkippedUser(username=user.username, reason=problem, user_id=user.id))
            continue

        username = user.username
        assert username is not None
        if username in eligible:
            skipped.append(SkippedUser(username=username, reason="duplicate-username", user_id=user.id))
            continue
        eligible.add(username)

        if username in external_set:
            to_update.append(user)
        else:
            to_create.append(user)

    orphaned = tuple(name for name in external if name not in eligible)
    return SyncPlan(
        directory_total=directory_total,
        external=tuple(external),
        to_create=tuple(to_create),
        to_update=tuple(to_update),
        orphaned=orphaned,
        skipped=tuple(skipped),
    )


class Reconciler:
    """Makes the access server's user list agree with the eligible directory users."""

    def __init__(
        self,
        directory: DirectoryReader,
        store: ExternalStore,
        *,
        password_factory=generate_temp_password,
    ) -> None:
        self._directory = directory
        self._store = store
        self._password_factory = password_factory

    def plan(self) -> SyncPlan:
        users = self._directory.list_users()
        external = self._store.list_usernames()
        return plan_sync(users, external)

    def actions_for(self, plan: SyncPlan, *, delete_orphaned: bool) -> List[SyncAction]:
        """Turn a plan into actions: creates and updates first, deletes last."""

        actions: List[SyncAction] = []
        for user in plan.to_create:
            assert user.username is not None
            actions.append(
                CreateAction(
                    username=user.username,
                    temp_password=self._password_factory(),
                    attributes=build_attributes(user),
                )
            )
        for user in plan.to_update:
            assert user.username is not None
            actions.append(UpdateAction(username=user.username, attributes=build_attributes(user)))
        if delete_orphaned:
            actions.extend(DeleteAction(username=name) for name in plan.orphaned)
        return actions

    def run(
        self,
        *,
        dry_run: bool = False,
        delete_orphaned: bool = False,
        trigger: RunTrigger = "manual",
    ) -> SyncResult:
        recorder = SyncRunRecorder(trigger=trigger, dry_run=dry_run, delete_orphaned=delete_orphaned)
        logger.info(
            "Starting user synchronisation (trigger=%s, dry_run=%s, delete_orphaned=%s)",
            trigger,
            dry_run,
            delete_orphaned,
        )

        try:
            plan = self.plan()
        except ServiceUnavailable as exc:
            exc.partial_run = recorder.finish(failure=str(exc))
            logger.error("User synchronisation aborted before planning: %s", exc)
            raise

        recorder.skipped.extend(plan.skipped)
        recorder.orphaned.extend(plan.orphaned)
        for entry in plan.skipped:
            logger.info("Skipping directory user %s (%s)", entry.user_id, entry.reason)
        if plan.orphaned and not delete_orphaned:
            logger.info("Leaving %d orphaned access server user(s) untouched", len(plan.orphaned))

        actions = self.actions_for(plan, delete_orphaned=delete_orphaned)
        credentials: Dict[str, str] = {}

        if dry_run:
            for action in actions:
                recorder.record_action(action)
        else:
            try:
                self._apply_all(actions, recorder, credentials)
            except ServiceUnavailable as exc:
                exc.partial_run = recorder.finish(failure=str(exc))
                logger.error("User synchronisation aborted: %s", exc)
                raise

        run = recorder.finish()
        logger.info(
            "User synchronisation finished (status=%s, created=%d, updated=%d, deleted=%d, "
            "orphaned=%d, skipped=%d, errors=%d)",
            run.status,
            len(run.created),
            len(run.updated),
            len(run.deleted),
            len(run.orphaned),
            len(run.skipped),
            len(run.errors),
        )
        return SyncResult(run=run, credentials=credentials)

    def _apply_all(
        self,
        actions: Sequence[SyncAction],
        recorder: SyncRunRecorder,
        credentials: Dict[str, str],
    ) -> None:
        for action in actions:
            try:
                effective = self._apply(action)
            except (ExternalLogicalError, ValidationError) as exc:
                logger.error("Failed to %s access server user %s: %s", action.kind, action.username, exc)
                recorder.record_error(action.username, str(exc))
                continue

            recorder.record_action(effective)
            if isinstance(effective, CreateAction):
                credentials[effective.username] = effective.temp_password

    def _apply(self, action: SyncAction) -> SyncAction:
        """Apply one action and return the action that actually took effect."""

        if isinstance(action, CreateAction):
            created = self._store.create_user(action.username, action.temp_password, action.attributes)
            if not created:
                return UpdateAction(username=action.username, attributes=action.attributes)
            return action
        if isinstance(action, UpdateAction):
            self._store.update_user(action.username, action.attributes)
            return action
        self._store.delete_user(action.username)
        return action

    def sync_user(self, user_id: int) -> SingleUserSyncResult:
        """Create or update a single directory user in the access server."""

        user = self._directory.get_by_id(user_id)
        if user is None:
            raise UserNotFound(user_id)
        problem = eligibility_problem(user)
        if problem is not None:
            raise UserIneligible(user_id, problem)

        username = user.username
        assert username is not None
        attributes = build_attributes(user)

        if username in set(self._store.list_usernames()):
            self._store.update_user(username, attributes)
            logger.info("Updated access server user %s from directory user %s", username, user_id)
            return SingleUserSyncResult(user_id=user_id, username=username, action="updated")

        temp_password = self._password_factory()
        if not self._store.create_user(username, temp_password, attributes):
            logger.info("Access server user %s appeared concurrently; attributes updated", username)
            return SingleUserSyncResult(user_id=user_id, username=username, action="updated")

        logger.info("Created access server user %s from directory user %s", username, user_id)
        return SingleUserSyncResult(
            user_id=user_id,
            username=username,
            action="created",
            temp_password=temp_password,
        )

    def remove_user(self, username: str) -> str:
        """Delete ``username`` from the access server without consulting the directory."""

        cleaned = validate_username(username)
        self._store.delete_user(cleaned)
        logger.info("Removed access server user %s", cleaned)
        return cleaned

    def propagate_password(self, username: str, new_password: str) -> None:
        """Push a changed password straight to the access server."""

        cleaned = validate_username(username)
        if not new_password:
            raise ValidationError("Password must not be empty")
        self._store.set_password(cleaned, new_password)
        logger.info("Propagated password change for access server user %s", cleaned)


__all__ = [
    "Reconciler",
    "SyncPlan",
    "plan_sync",
    "build_attributes",
    "generate_temp_password",
    "DirectoryReader",
    "ExternalStore",
]
