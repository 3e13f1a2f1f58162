"""Client for the access server's ``sacli`` user database."""
from __future__ import annotations

import json
import logging
import re
from typing import Dict, List, Mapping, Sequence

from .commands import CommandExecutionError, CommandResult, CommandRunner
from .errors import (
    ExternalLogicalError,
    ExternalUserExists,
    ExternalUserNotFound,
    InfrastructureUnavailable,
    ValidationError,
)

logger = logging.getLogger("vpnsync.external_store")

PROP_EMAIL = "prop_email"
PROP_DISPLAY_NAME = "prop_c_name"
PROP_SUPERUSER = "prop_superuser"

_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@+-]{0,63}$")
_PROPERTY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.]{1,64}$")
_NOT_FOUND_MARKERS = ("not found", "no such user", "does not exist", "unknown user")
_DUPLICATE_MARKERS = ("already exists", "duplicate")


def validate_username(username: str) -> str:
    """Return the cleaned username or raise :class:`ValidationError`."""

    if not isinstance(username, str):
        raise ValidationError("Username must be a string")
    cleaned = username.strip()
    if not cleaned:
        raise ValidationError("Username must not be empty")
    if not _USERNAME_PATTERN.fullmatch(cleaned):
        raise ValidationError(
            "Username may only include letters, numbers, dots, dashes, underscores, plus signs "
            "and @, must start with a letter or number and be at most 64 characters"
        )
    return cleaned


def _validate_password(password: str) -> str:
    if not isinstance(password, str) or not password:
        raise ValidationError("Password must not be empty")
    if any(ch in password for ch in "\r\n\x00"):
        raise ValidationError("Password must not contain newline or NUL characters")
    return password


def _validate_attributes(attributes: Mapping[str, str]) -> Dict[str, str]:
    cleaned: Dict[str, str] = {}
    for key, value in attributes.items():
        if not _PROPERTY_KEY_PATTERN.fullmatch(str(key)):
            raise ValidationError(f"Invalid property name '{key}'")
        text = "" if value is None else str(value)
        if any(ch in text for ch in "\r\n\x00"):
            raise ValidationError(f"Property '{key}' must not contain newline characters")
        cleaned[str(key)] = text
    return cleaned


class ExternalStoreClient:
    """List, create, update and delete access server users via ``sacli``.

    Every call is executed through a :class:`CommandRunner` inside the access
    server's container. Transport failures become
    :class:`InfrastructureUnavailable`; a command that ran but exited non-zero
    becomes an :class:`ExternalLogicalError`.
    """

    def __init__(self, runner: CommandRunner, *, sacli: str = "sacli", timeout: float = 30.0) -> None:
        if timeout <= 0:
            raise ValueError("Command timeout must be positive")
        self._runner = runner
        self._sacli = sacli
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        return self._timeout

    def list_usernames(self) -> List[str]:
        result = self._execute([self._sacli, "UserPropGet"], "list access server users")
        records = self._parse_records(result, "list access server users")
        return sorted(name for name, props in records.items() if self._is_user_record(name, props))

    def user_exists(self, username: str) -> bool:
        cleaned = validate_username(username)
        result = self._execute(
            [self._sacli, "--pfilt", cleaned, "UserPropGet"],
            f"look up access server user '{cleaned}'",
            username=cleaned,
        )
        records = self._parse_records(result, f"look up access server user '{cleaned}'")
        return cleaned in records

    def create_user(self, username: str, password: str, attributes: Mapping[str, str]) -> bool:
        """Create the user, or update it if it already exists.

        Returns ``True`` when a new record was created and ``False`` when the
        call was upgraded to an attribute update, so re-applying a create is
        harmless and never resets an existing password.
        """

        cleaned = validate_username(username)
        secret = _validate_password(password)
        props = _validate_attributes(attributes)

        if self.user_exists(cleaned):
            logger.info("Access server user %s already exists; updating attributes instead", cleaned)
            self._put_properties(cleaned, props)
            return False

        logger.info("Creating access server user %s", cleaned)
        # The password goes in first; a record must never exist without one.
        self._set_password(cleaned, secret)
        try:
            self._put_property(cleaned, "type", "user_connect")
            self._put_properties(cleaned, props)
        except (ExternalLogicalError, InfrastructureUnavailable):
            self._discard_partial_user(cleaned)
            raise
        return True

    def update_user(self, username: str, attributes: Mapping[str, str]) -> None:
        cleaned = validate_username(username)
        props = _validate_attributes(attributes)
        logger.debug("Updating access server user %s", cleaned)
        self._put_properties(cleaned, props)

    def set_password(self, username: str, password: str) -> None:
        cleaned = validate_username(username)
        self._set_password(cleaned, _validate_password(password))

    def delete_user(self, username: str) -> None:
        cleaned = validate_username(username)
        if not self.user_exists(cleaned):
            raise ExternalUserNotFound(f"Access server user '{cleaned}' not found", username=cleaned)
        logger.info("Deleting access server user %s", cleaned)
        self._execute(
            [self._sacli, "--user", cleaned, "UserPropDelAll"],
            f"delete access server user '{cleaned}'",
            username=cleaned,
        )

    def _set_password(self, username: str, password: str) -> None:
        self._execute(
            [self._sacli, "--user", username, "--new_pass", password, "SetLocalPassword"],
            f"set password for access server user '{username}'",
            username=username,
        )

    def _discard_partial_user(self, username: str) -> None:
        logger.warning("Removing partially created access server user %s", username)
        try:
            self._execute(
                [self._sacli, "--user", username, "UserPropDelAll"],
                f"remove partially created access server user '{username}'",
                username=username,
            )
        except (ExternalLogicalError, InfrastructureUnavailable) as exc:
            logger.error("Could not remove partially created access server user %s: %s", username, exc)

    def _put_properties(self, username: str, props: Mapping[str, str]) -> None:
        for key, value in props.items():
            self._put_property(username, key, value)

    def _put_property(self, username: str, key: str, value: str) -> None:
        self._execute(
            [self._sacli, "--user", username, "--key", key, "--value", value, "UserPropPut"],
            f"set {key} for access server user '{username}'",
            username=username,
        )

    def _execute(self, command: Sequence[str], action: str, *, username: str | None = None) -> CommandResult:
        try:
            result = self._runner.run(command, timeout=self._timeout)
        except CommandExecutionError as exc:
            raise InfrastructureUnavailable(f"Failed to {action}: {exc}") from exc

        if result.exit_status != 0:
            raise self._classify_failure(action, result, username)
        return result

    @staticmethod
    def _classify_failure(action: str, result: CommandResult, username: str | None) -> ExternalLogicalError:
        detail = result.output()
        message = f"Failed to {action}: {detail}"
        lowered = detail.lower()
        if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
            return ExternalUserNotFound(message, username=username)
        if any(marker in lowered for marker in _DUPLICATE_MARKERS):
            return ExternalUserExists(message, username=username)
        return ExternalLogicalError(message, username=username)

    @staticmethod
    def _parse_records(result: CommandResult, action: str) -> Dict[str, object]:
        text = result.stdout.strip()
        if not text:
            return {}
        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise ExternalLogicalError(f"Failed to {action}: output was not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ExternalLogicalError(f"Failed to {action}: unexpected output format")
        return payload

    @staticmethod
    def _is_user_record(name: str, props: object) -> bool:
        # __DEFAULT__ and similar entries hold server-wide defaults
        if name.startswith("__"):
            return False
        if isinstance(props, dict) and props.get("type") == "group":
            return False
        return True


__all__ = [
    "ExternalStoreClient",
    "validate_username",
    "PROP_EMAIL",
    "PROP_DISPLAY_NAME",
    "PROP_SUPERUSER",
]
