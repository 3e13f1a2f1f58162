"""Domain models for directory users, sync actions and run records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Literal, Mapping, Optional, Tuple, Union

SkipReason = Literal["no-username", "not-verified", "duplicate-username"]
RunTrigger = Literal["scheduled", "manual", "startup"]
RunStatus = Literal["succeeded", "completed_with_errors", "failed"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class DirectoryUser:
    """Read-only projection of a row in the authoritative user table."""

    id: int
    username: Optional[str]
    email: str
    email_verified: bool
    display_name: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class CreateAction:
    username: str
    temp_password: str
    attributes: Mapping[str, str]
    kind: Literal["create"] = "create"


@dataclass(frozen=True)
class UpdateAction:
    username: str
    attributes: Mapping[str, str]
    kind: Literal["update"] = "update"


@dataclass(frozen=True)
class DeleteAction:
    username: str
    kind: Literal["delete"] = "delete"


SyncAction = Union[CreateAction, UpdateAction, DeleteAction]


@dataclass(frozen=True)
class SkippedUser:
    username: Optional[str]
    reason: str
    user_id: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return {"username": self.username, "reason": self.reason, "userId": self.user_id}


@dataclass(frozen=True)
class SyncFailure:
    username: str
    message: str

    def to_dict(self) -> Dict[str, object]:
        return {"username": self.username, "message": self.message}


@dataclass(frozen=True)
class SyncRun:
    """Immutable record of a finished reconciliation run."""

    id: str
    trigger: RunTrigger
    started_at: datetime
    finished_at: datetime
    dry_run: bool
    delete_orphaned: bool
    status: RunStatus
    created: Tuple[str, ...] = ()
    updated: Tuple[str, ...] = ()
    deleted: Tuple[str, ...] = ()
    orphaned: Tuple[str, ...] = ()
    skipped: Tuple[SkippedUser, ...] = ()
    errors: Tuple[SyncFailure, ...] = ()
    failure: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status != "failed"

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def summary(self) -> Dict[str, int]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "deleted": len(self.deleted),
            "orphaned": len(self.orphaned),
            "skipped": len(self.skipped),
            "errors": len(self.errors),
        }

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "trigger": self.trigger,
            "status": self.status,
            "startedAt": _isoformat(self.started_at),
            "finishedAt": _isoformat(self.finished_at),
            "durationMs": self.duration_ms,
            "dryRun": self.dry_run,
            "deleteOrphaned": self.delete_orphaned,
            "created": list(self.created),
            "updated": list(self.updated),
            "deleted": list(self.deleted),
            "orphaned": list(self.orphaned),
            "skipped": [entry.to_dict() for entry in self.skipped],
            "errors": [entry.to_dict() for entry in self.errors],
            "failure": self.failure,
            "summary": self.summary(),
        }


@dataclass
class SyncRunRecorder:
    """Mutable accumulator for a run in progress, frozen by :meth:`finish`."""

    trigger: RunTrigger
    dry_run: bool
    delete_orphaned: bool
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=_utcnow)
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    orphaned: List[str] = field(default_factory=list)
    skipped: List[SkippedUser] = field(default_factory=list)
    errors: List[SyncFailure] = field(default_factory=list)
    _finished: Optional[SyncRun] = None

    def record_action(self, action: SyncAction) -> None:
        if self._finished is not None:
            raise RuntimeError("Cannot record actions on a finished run")
        if action.kind == "create":
            self.created.append(action.username)
        elif action.kind == "update":
            self.updated.append(action.username)
        else:
            self.deleted.append(action.username)

    def record_error(self, username: str, message: str) -> None:
        if self._finished is not None:
            raise RuntimeError("Cannot record errors on a finished run")
        self.errors.append(SyncFailure(username=username, message=message))

    def finish(self, *, failure: Optional[str] = None) -> SyncRun:
        if self._finished is not None:
            return self._finished

        if failure is not None:
            status: RunStatus = "failed"
        elif self.errors:
            status = "completed_with_errors"
        else:
            status = "succeeded"

        self._finished = SyncRun(
            id=self.id,
            trigger=self.trigger,
            started_at=self.started_at,
            finished_at=_utcnow(),
            dry_run=self.dry_run,
            delete_orphaned=self.delete_orphaned,
            status=status,
            created=tuple(self.created),
            updated=tuple(self.updated),
            deleted=tuple(self.deleted),
            orphaned=tuple(self.orphaned),
            skipped=tuple(self.skipped),
            errors=tuple(self.errors),
            failure=failure,
        )
        return self._finished


@dataclass(frozen=True)
class SyncResult:
    """A finished run together with credentials issued during it.

    Credentials are handed to the caller only; the :class:`SyncRun` kept in
    history never contains them.
    """

    run: SyncRun
    credentials: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        payload = self.run.to_dict()
        payload["credentials"] = [
            {"username": username, "tempPassword": password}
            for username, password in self.credentials.items()
        ]
        return payload


@dataclass(frozen=True)
class SingleUserSyncResult:
    user_id: int
    username: str
    action: Literal["created", "updated"]
    temp_password: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "action": self.action,
            "tempPassword": self.temp_password,
        }


@dataclass(frozen=True)
class SchedulerState:
    """Point-in-time snapshot of the scheduler."""

    is_running: bool
    is_syncing: bool
    interval_minutes: int
    schedule_expression: str
    last_run: Optional[SyncRun]
    next_fire_time: Optional[datetime]

    @property
    def schedule_description(self) -> str:
        if self.interval_minutes == 1:
            return "every minute"
        return f"every {self.interval_minutes} minutes"

    def to_dict(self) -> Dict[str, object]:
        return {
            "isRunning": self.is_running,
            "isSyncing": self.is_syncing,
            "intervalMinutes": self.interval_minutes,
            "scheduleExpression": self.schedule_expression,
            "scheduleDescription": self.schedule_description,
            "lastRunSummary": self.last_run.to_dict() if self.last_run else None,
            "nextFireTime": _isoformat(self.next_fire_time),
        }


__all__ = [
    "DirectoryUser",
    "CreateAction",
    "UpdateAction",
    "DeleteAction",
    "SyncAction",
    "SkippedUser",
    "SyncFailure",
    "SyncRun",
    "SyncRunRecorder",
    "SyncResult",
    "SingleUserSyncResult",
    "SchedulerState",
]
