"""Thin facade the API layer and the account flows call into."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .directory import Directory
from .errors import (
    AlreadySyncing,
    ExternalLogicalError,
    ServiceUnavailable,
    UserNotFound,
    ValidationError,
)
from .external_store import validate_username
from .history import RunStatistics
from .models import SchedulerState, SingleUserSyncResult, SyncResult, SyncRun
from .reconciler import Reconciler
from .scheduler import Scheduler

logger = logging.getLogger("vpnsync.service")

RECENT_HISTORY_LIMIT = 5


@dataclass(frozen=True)
class SyncStatus:
    directory_total: int
    external_total: int
    in_sync: List[str]
    missing_in_external: List[str]
    orphaned_in_external: List[str]
    without_username: int
    scheduler: SchedulerState
    statistics: RunStatistics
    recent_history: List[SyncRun] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def sync_percentage(self) -> int:
        eligible = len(self.in_sync) + len(self.missing_in_external)
        if eligible == 0:
            return 100
        return round(len(self.in_sync) / eligible * 100)

    def to_dict(self) -> Dict[str, object]:
        return {
            "directoryTotal": self.directory_total,
            "externalTotal": self.external_total,
            "inSync": len(self.in_sync),
            "missingInExternal": len(self.missing_in_external),
            "orphanedInExternal": len(self.orphaned_in_external),
            "withoutUsername": self.without_username,
            "syncPercentage": self.sync_percentage,
            "details": {
                "inSync": list(self.in_sync),
                "missingInExternal": list(self.missing_in_external),
                "orphanedInExternal": list(self.orphaned_in_external),
            },
            "scheduler": self.scheduler.to_dict(),
            "statistics": self.statistics.to_dict(),
            "recentHistory": [run.to_dict() for run in self.recent_history],
            "lastChecked": self.checked_at.isoformat(),
        }


class SyncService:
    """Entry points for full, single-user and removal syncs plus scheduler control."""

    def __init__(self, directory: Directory, reconciler: Reconciler, scheduler: Scheduler) -> None:
        self._directory = directory
        self._reconciler = reconciler
        self._scheduler = scheduler

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def directory(self) -> Directory:
        return self._directory

    def full_sync(self, *, dry_run: bool = False, delete_orphaned: bool = False) -> SyncResult:
        return self._scheduler.run_now(dry_run=dry_run, delete_orphaned=delete_orphaned, trigger="manual")

    def sync_user(self, user_id: int) -> SingleUserSyncResult:
        with self._scheduler.exclusive():
            return self._reconciler.sync_user(user_id)

    def remove_user(self, username: str) -> str:
        cleaned = validate_username(username)
        with self._scheduler.exclusive():
            return self._reconciler.remove_user(cleaned)

    def status(self, *, history_limit: int = RECENT_HISTORY_LIMIT) -> SyncStatus:
        plan = self._reconciler.plan()
        return SyncStatus(
            directory_total=plan.directory_total,
            external_total=len(plan.external),
            in_sync=[user.username for user in plan.to_update if user.username],
            missing_in_external=[user.username for user in plan.to_create if user.username],
            orphaned_in_external=list(plan.orphaned),
            without_username=sum(1 for entry in plan.skipped if entry.reason == "no-username"),
            scheduler=self._scheduler.state(),
            statistics=self._scheduler.statistics(),
            recent_history=self._scheduler.history.recent(history_limit),
        )

    def control_scheduler(self, action: str) -> bool:
        if action == "start":
            return self._scheduler.start()
        if action == "stop":
            return self._scheduler.stop()
        raise ValidationError('Invalid action. Must be "start" or "stop"')

    def update_interval(self, minutes: object) -> SchedulerState:
        return self._scheduler.update_interval(minutes)

    # ------------------------------------------------------------------
    # Best-effort hooks for account flows
    # ------------------------------------------------------------------
    def propagate_password(self, username: str, new_password: str) -> bool:
        """Push a new password to the access server; never raises.

        Returns ``True`` when the access server accepted the change. Failures
        are logged so the calling account flow can carry on regardless.
        """

        try:
            self._reconciler.propagate_password(username, new_password)
        except (ServiceUnavailable, ExternalLogicalError, ValidationError) as exc:
            logger.error("Failed to propagate password for access server user %s: %s", username, exc)
            return False
        return True

    def change_password(self, user_id: int, new_password: str) -> bool:
        """Store a new directory password and propagate it to the access server.

        Returns whether propagation succeeded; the directory update itself
        raises on failure.
        """

        if not self._directory.set_password(user_id, new_password):
            raise UserNotFound(user_id)
        user = self._directory.get_by_id(user_id)
        if user is None or not user.username:
            return False
        return self.propagate_password(user.username, new_password)

    def verify_email(self, user_id: int) -> Optional[SingleUserSyncResult]:
        """Mark the user verified and try to provision them straight away."""

        user = self._directory.mark_email_verified(user_id)
        if user is None:
            raise UserNotFound(user_id)
        if not user.username:
            logger.info("User %s verified without a username; provisioning deferred", user_id)
            return None
        try:
            return self.sync_user(user_id)
        except (ServiceUnavailable, ExternalLogicalError, AlreadySyncing, ValidationError) as exc:
            logger.error(
                "Failed to provision access server user %s after verification: %s",
                user.username,
                exc,
            )
            return None


__all__ = ["SyncService", "SyncStatus", "RECENT_HISTORY_LIMIT"]
