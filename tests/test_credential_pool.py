from __future__ import annotations

from threading import Thread

import pytest

from influencer_finder.services.credential_pool import Credential, CredentialPool, mask_secret
from influencer_finder.services.errors import (
    InvalidCredentialError,
    NoCredentialError,
    QuotaExceededError,
    UpstreamUnavailableError,
)


def _pool(*labels: str, quota_limit: int = 10_000) -> CredentialPool:
    return CredentialPool(
        [
            Credential.from_secret(f"secret-{label}-0000", label=label, quota_limit=quota_limit)
            for label in labels
        ]
    )


def test_current_returns_first_active_credential() -> None:
    pool = _pool("a", "b")
    assert pool.current().label == "a"


def test_empty_pool_raises_no_credential() -> None:
    with pytest.raises(NoCredentialError):
        CredentialPool().current()


def test_record_usage_marks_exhausted_at_95_percent() -> None:
    pool = _pool("a", "b", quota_limit=100)
    first = pool.current()

    pool.record_usage(first.id, 94)
    assert pool.get(first.id).status == "active"  # type: ignore[union-attr]

    pool.record_usage(first.id, 1)
    exhausted = pool.get(first.id)
    assert exhausted is not None
    assert exhausted.status == "exhausted"
    assert exhausted.quota_used == 95
    assert exhausted.last_used_at is not None
    assert pool.current().label == "b"


def test_record_failure_maps_error_types_to_status() -> None:
    pool = _pool("a", "b", "c")
    a, b, c = (view.id for view in pool.snapshot())

    pool.record_failure(a, QuotaExceededError("quota"))
    pool.record_failure(b, InvalidCredentialError("bad key"))
    pool.record_failure(c, UpstreamUnavailableError("503"))

    statuses = {view.id: view.status for view in pool.snapshot()}
    assert statuses == {a: "exhausted", b: "error", c: "active"}
    assert pool.get(b).last_error == "bad key"  # type: ignore[union-attr]
    assert pool.current().id == c


def test_rotate_round_robin_skips_inactive() -> None:
    pool = _pool("a", "b", "c")
    a, b, c = (view.id for view in pool.snapshot())
    pool.record_failure(b, InvalidCredentialError("bad key"))

    assert pool.rotate() is True
    assert pool.current().id == c
    assert pool.rotate() is True
    assert pool.current().id == a


def test_rotate_without_alternative_returns_false() -> None:
    pool = _pool("a")
    only = pool.current()
    pool.record_failure(only.id, QuotaExceededError("quota"))

    assert pool.rotate(from_id=only.id) is False
    with pytest.raises(NoCredentialError):
        pool.current()


def test_rotate_from_stale_credential_is_noop() -> None:
    pool = _pool("a", "b", "c")
    a, b, _ = (view.id for view in pool.snapshot())
    pool.record_failure(a, QuotaExceededError("quota"))

    assert pool.rotate(from_id=a) is True
    assert pool.current().id == b
    # A second worker that also failed on `a` must not skip past `b`.
    assert pool.rotate(from_id=a) is True
    assert pool.current().id == b


def test_replace_bumps_generation_and_resets_cursor() -> None:
    pool = _pool("a", "b")
    generation = pool.generation
    pool.rotate()

    pool.replace([Credential.from_secret("fresh-secret-0001", label="fresh")])

    assert pool.generation == generation + 1
    assert pool.current().label == "fresh"


def test_replace_drops_duplicate_secrets() -> None:
    pool = CredentialPool()
    pool.replace(
        [
            Credential.from_secret("same-secret-0001", label="one"),
            Credential.from_secret("same-secret-0001", label="two"),
        ]
    )
    assert [view.label for view in pool.snapshot()] == ["one"]


def test_reset_restores_active_status() -> None:
    pool = _pool("a")
    only = pool.current()
    pool.record_failure(only.id, QuotaExceededError("quota"))

    assert pool.reset(only.id) is True
    assert pool.current().id == only.id
    assert pool.reset("cred_missing") is False


def test_snapshot_masks_secrets_and_flags_current() -> None:
    pool = CredentialPool([Credential.from_secret("AIzaVerySecretValue1234", label="main")])

    view = pool.snapshot()[0]

    assert view.masked_secret == "AIza...1234"
    assert "VerySecret" not in view.masked_secret
    assert view.is_current is True


def test_mask_secret_hides_short_values_entirely() -> None:
    assert mask_secret("short") == "*****"


def test_concurrent_usage_is_not_lost() -> None:
    pool = _pool("a", quota_limit=1_000_000)
    credential_id = pool.current().id

    def _worker() -> None:
        for _ in range(100):
            pool.record_usage(credential_id, 1)

    threads = [Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert pool.get(credential_id).quota_used == 800  # type: ignore[union-attr]
