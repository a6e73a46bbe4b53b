from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from threading import Lock
from typing import Literal

from influencer_finder.services.errors import (
    InvalidCredentialError,
    NoCredentialError,
    PlatformError,
    QuotaExceededError,
)

CredentialStatus = Literal["active", "exhausted", "error"]

DEFAULT_QUOTA_LIMIT = 10_000
EXHAUSTION_THRESHOLD = 0.95

LOGGER = logging.getLogger("influencer_finder.credentials")


def _utc_now() -> datetime:
    return datetime.now(UTC)


def mask_secret(secret: str) -> str:
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-4:]}"


def credential_fingerprint(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:12]


@dataclass(frozen=True)
class Credential:
    id: str
    label: str
    secret: str
    status: CredentialStatus = "active"
    quota_used: int = 0
    quota_limit: int = DEFAULT_QUOTA_LIMIT
    last_error: str | None = None
    last_used_at: datetime | None = None

    @classmethod
    def from_secret(
        cls,
        secret: str,
        *,
        label: str | None = None,
        quota_limit: int = DEFAULT_QUOTA_LIMIT,
    ) -> Credential:
        fingerprint = credential_fingerprint(secret)
        return cls(
            id=f"cred_{fingerprint}",
            label=label or f"key-{fingerprint[:6]}",
            secret=secret,
            quota_limit=quota_limit,
        )

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class CredentialStatusView:
    id: str
    label: str
    masked_secret: str
    status: CredentialStatus
    quota_used: int
    quota_limit: int
    last_error: str | None
    last_used_at: datetime | None
    is_current: bool


class CredentialPool:
    """Thread-safe set of API credentials with round-robin failover.

    A credential moves from `active` to `exhausted` (quota spent) or `error`
    (rejected by the platform) and stays there until `reset` or `replace`.
    Every `replace` bumps `generation`, which callers fold into cache keys.
    """

    def __init__(
        self,
        credentials: Sequence[Credential] = (),
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._lock = Lock()
        self._clock = clock
        self._credentials: list[Credential] = []
        self._cursor = 0
        self._generation = 0
        self._install(credentials)

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def current(self) -> Credential:
        with self._lock:
            current = self._current_locked()
            if current is not None and current.is_active:
                return current
            if self._advance_locked():
                advanced = self._current_locked()
                assert advanced is not None
                return advanced
        raise NoCredentialError("No active API credential is available.")

    def has_active(self) -> bool:
        with self._lock:
            return any(credential.is_active for credential in self._credentials)

    def record_usage(self, credential_id: str, units: int) -> None:
        with self._lock:
            index = self._index_locked(credential_id)
            if index is None:
                return
            credential = self._credentials[index]
            quota_used = credential.quota_used + max(0, units)
            status = credential.status
            if status == "active" and quota_used >= credential.quota_limit * EXHAUSTION_THRESHOLD:
                status = "exhausted"
                LOGGER.warning(
                    "credential exhausted by usage credential=%s quota_used=%s quota_limit=%s",
                    credential.label,
                    quota_used,
                    credential.quota_limit,
                )
            self._credentials[index] = replace(
                credential,
                quota_used=quota_used,
                status=status,
                last_used_at=self._clock(),
            )

    def record_failure(self, credential_id: str, error: PlatformError) -> None:
        with self._lock:
            index = self._index_locked(credential_id)
            if index is None:
                return
            credential = self._credentials[index]
            status = credential.status
            if isinstance(error, QuotaExceededError):
                status = "exhausted"
            elif isinstance(error, InvalidCredentialError):
                status = "error"
            self._credentials[index] = replace(
                credential,
                status=status,
                last_error=str(error),
                last_used_at=self._clock(),
            )
        if status != credential.status:
            LOGGER.warning(
                "credential status changed credential=%s status=%s error=%s",
                credential.label,
                status,
                type(error).__name__,
            )

    def rotate(self, from_id: str | None = None) -> bool:
        """Advance to the next active credential.

        With `from_id`, a rotation already performed by another caller counts
        as success, so concurrent failures on one credential rotate only once.
        """
        with self._lock:
            current = self._current_locked()
            if (
                from_id is not None
                and current is not None
                and current.id != from_id
                and current.is_active
            ):
                return True
            rotated = self._advance_locked()
            if rotated:
                next_credential = self._current_locked()
                assert next_credential is not None
                LOGGER.info(
                    "credential rotated from=%s to=%s",
                    current.label if current is not None else None,
                    next_credential.label,
                )
            return rotated

    def replace(self, credentials: Sequence[Credential]) -> None:
        with self._lock:
            self._install(credentials)

    def reset(self, credential_id: str, *, clear_usage: bool = False) -> bool:
        with self._lock:
            index = self._index_locked(credential_id)
            if index is None:
                return False
            credential = self._credentials[index]
            self._credentials[index] = replace(
                credential,
                status="active",
                last_error=None,
                quota_used=0 if clear_usage else credential.quota_used,
            )
            return True

    def get(self, credential_id: str) -> Credential | None:
        with self._lock:
            index = self._index_locked(credential_id)
            if index is None:
                return None
            return self._credentials[index]

    def snapshot(self) -> list[CredentialStatusView]:
        with self._lock:
            current = self._current_locked()
            return [
                CredentialStatusView(
                    id=credential.id,
                    label=credential.label,
                    masked_secret=mask_secret(credential.secret),
                    status=credential.status,
                    quota_used=credential.quota_used,
                    quota_limit=credential.quota_limit,
                    last_error=credential.last_error,
                    last_used_at=credential.last_used_at,
                    is_current=current is not None and credential.id == current.id,
                )
                for credential in self._credentials
            ]

    def _install(self, credentials: Sequence[Credential]) -> None:
        unique: dict[str, Credential] = {}
        for credential in credentials:
            unique.setdefault(credential.id, credential)
        self._credentials = list(unique.values())
        self._cursor = 0
        self._generation += 1

    def _current_locked(self) -> Credential | None:
        if not self._credentials:
            return None
        return self._credentials[self._cursor % len(self._credentials)]

    def _index_locked(self, credential_id: str) -> int | None:
        for index, credential in enumerate(self._credentials):
            if credential.id == credential_id:
                return index
        return None

    def _advance_locked(self) -> bool:
        total = len(self._credentials)
        for step in range(1, total):
            candidate_index = (self._cursor + step) % total
            if self._credentials[candidate_index].is_active:
                self._cursor = candidate_index
                return True
        return False
