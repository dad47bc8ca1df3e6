"""Tests for credential rotation, cooldown and invalidation."""
import pytest

from keyrelay.core.credential_pool import (
    Credential,
    CredentialPool,
    CredentialStatus,
    parse_retry_after,
)
from keyrelay.core.errors import DuplicateKeyError


def make_pool(*statuses, on_select=None):
    pool = CredentialPool(on_select=on_select)
    pool.load(
        Credential(id=f"k{i}", key=f"sk-secret-{i:04d}", status=status, created_at=1000.0 + i)
        for i, status in enumerate(statuses)
    )
    return pool


def test_each_active_credential_selected_once_per_cycle():
    """N active credentials: N selections visit each exactly once."""
    pool = make_pool("active", "active", "active", "active")

    picked = [pool.select_next(now=0.0).id for _ in range(4)]

    assert sorted(picked) == ["k0", "k1", "k2", "k3"]
    assert picked == ["k0", "k1", "k2", "k3"]  # creation order
    assert pool.select_next(now=0.0).id == "k0"


def test_selection_skips_non_active():
    pool = make_pool("active", "inactive", "invalid", "active")

    assert pool.usable_ids == ["k0", "k3"]
    assert [pool.select_next(now=0.0).id for _ in range(3)] == ["k0", "k3", "k0"]


def test_selection_updates_usage_and_marks_dirty():
    calls = []
    pool = make_pool("active", on_select=lambda: calls.append(1))

    selection = pool.select_next(now=1234.5)

    assert selection.key == "sk-secret-0000"
    credential = pool.get("k0")
    assert credential.use_count == 1
    assert credential.last_used == 1234.5
    assert pool.dirty_ids == {"k0"}
    assert calls == [1]


def test_empty_pool_returns_none():
    pool = CredentialPool()

    assert pool.select_next(now=0.0) is None
    assert not pool.has_usable()


def test_invalidated_credential_never_selected_again():
    pool = make_pool("active", "active")

    assert pool.invalidate("k0") is True
    assert pool.get("k0").status == CredentialStatus.INVALID.value
    assert "k0" in pool.dirty_ids

    picked = {pool.select_next(now=0.0).id for _ in range(5)}
    assert picked == {"k1"}


def test_invalidate_is_idempotent():
    pool = make_pool("active")

    assert pool.invalidate("k0") is True
    assert pool.invalidate("k0") is False
    assert pool.invalidate("missing") is False
    assert pool.select_next(now=0.0) is None
    assert not pool.has_usable()


def test_cooldown_window():
    """apply_cooldown(id, "5") at T: unselectable in [T, T+5), selectable at T+5."""
    pool = make_pool("active")
    t = 10_000.0

    assert pool.apply_cooldown("k0", "5", now=t) == t + 5

    assert pool.select_next(now=t) is None
    assert pool.select_next(now=t + 4.999) is None
    assert pool.has_usable()  # temporarily exhausted, not empty
    assert pool.select_next(now=t + 5).id == "k0"


def test_cooldown_skips_to_next_credential():
    pool = make_pool("active", "active")
    pool.apply_cooldown("k0", "30", now=0.0)

    assert [pool.select_next(now=1.0).id for _ in range(2)] == ["k1", "k1"]


@pytest.mark.parametrize(
    "header,expected",
    [
        ("7", 7.0),
        (" 12 ", 12.0),
        ("0", 0.0),
        (None, 2.0),
        ("", 2.0),
        ("1.5", 2.0),
        ("-3", 2.0),
        ("Wed, 21 Oct 2015 07:28:00 GMT", 2.0),
    ],
)
def test_parse_retry_after(header, expected):
    assert parse_retry_after(header) == expected


def test_min_cooldown_remaining_and_sweep():
    pool = make_pool("active", "active")
    pool.apply_cooldown("k0", "10", now=100.0)
    pool.apply_cooldown("k1", "3", now=100.0)

    assert pool.min_cooldown_remaining(now=101.0) == pytest.approx(2.0)

    assert pool.sweep_cooldowns(now=104.0) == 1
    assert pool.cooldown_until("k1") is None
    assert pool.cooldown_until("k0") == 110.0
    assert pool.min_cooldown_remaining(now=120.0) is None


def test_add_rejects_duplicate_secret():
    pool = make_pool("active")

    with pytest.raises(DuplicateKeyError):
        pool.add(Credential(id="other", key="sk-secret-0000"))


def test_status_change_rebuilds_usable_list():
    pool = make_pool("active", "inactive")

    pool.set_status("k1", CredentialStatus.ACTIVE)
    assert pool.usable_ids == ["k0", "k1"]

    pool.set_status("k0", CredentialStatus.INACTIVE)
    assert pool.usable_ids == ["k1"]


def test_cursor_clamped_after_removal():
    pool = make_pool("active", "active", "active")
    pool.select_next(now=0.0)
    pool.select_next(now=0.0)  # cursor now at k2

    pool.remove("k2")

    assert pool.select_next(now=0.0).id == "k0"


def test_take_dirty_clears_snapshot():
    pool = make_pool("active", "active")
    pool.select_next(now=0.0)

    records = pool.take_dirty()

    assert list(records) == ["k0"]
    assert records["k0"]["use_count"] == 1
    assert pool.dirty_ids == set()

    pool.mark_dirty(records.keys())
    assert pool.dirty_ids == {"k0"}
