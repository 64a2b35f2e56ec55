from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
import random

from imagevault.domain.models import StorageAccount
from imagevault.services.capacity import Availability, can_accommodate
from imagevault.services.selector import (
    CapacityExhausted,
    ScoredAccount,
    recency_score,
    score_account,
    select_account,
    weighted_pick,
)


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _account(account_id: str, **overrides: object) -> StorageAccount:
    values: dict[str, object] = {
        "id": account_id,
        "provider": "fake",
        "account_identifier": account_id,
        "storage_limit": 1000,
        "storage_used": 0,
        "bandwidth_limit": None,
        "bandwidth_used": 0,
        "uploads_limit": None,
        "uploads_used": 0,
        "status": "active",
        "last_used_at": NOW - timedelta(days=1),
    }
    values.update(overrides)
    return StorageAccount(**values)


def _scored(account_id: str, score: float) -> ScoredAccount:
    return ScoredAccount(
        account=_account(account_id),
        score=score,
        availability=Availability(storage=1.0, bandwidth=1.0, uploads=1.0),
        recency=1.0,
    )


def test_weighted_pick_frequencies_match_scores() -> None:
    candidates = [_scored("a", 0.9), _scored("b", 0.5), _scored("c", 0.1)]
    rng = random.Random(42)
    trials = 10_000
    counts = Counter(weighted_pick(candidates, rng).account.id for _ in range(trials))

    total = 0.9 + 0.5 + 0.1
    for account_id, score in (("a", 0.9), ("b", 0.5), ("c", 0.1)):
        assert abs(counts[account_id] / trials - score / total) < 0.03


def test_selector_never_returns_an_account_that_cannot_fit() -> None:
    rng = random.Random(7)
    pool = [
        _account("full", storage_used=990),
        _account("roomy", storage_used=100),
        _account("tight", storage_used=950),
    ]
    for _ in range(200):
        chosen = select_account(pool, 60, rng=rng, now=NOW)
        assert isinstance(chosen, StorageAccount)
        assert can_accommodate(chosen, 60)
        assert chosen.id == "roomy"


def test_selector_skips_non_selectable_statuses() -> None:
    pool = [
        _account("disabled", status="disabled"),
        _account("exhausted", status="exhausted"),
        _account("near", status="near_limit", storage_used=850),
    ]
    chosen = select_account(pool, 10, rng=random.Random(1), now=NOW)
    assert isinstance(chosen, StorageAccount)
    assert chosen.id == "near"


def test_capacity_exhausted_when_nothing_fits() -> None:
    pool = [_account("a", storage_used=990), _account("b", storage_used=995)]
    result = select_account(pool, 100, rng=random.Random(1), now=NOW)
    assert isinstance(result, CapacityExhausted)
    assert result.pool_size == 2
    assert result.eligible == 2
    assert "at capacity" in result.reason


def test_capacity_exhausted_with_empty_pool() -> None:
    result = select_account([], 1, rng=random.Random(1), now=NOW)
    assert isinstance(result, CapacityExhausted)
    assert result.reason == "No available storage accounts"


def test_top_k_one_always_picks_best_score() -> None:
    pool = [
        _account("busy", storage_used=700),
        _account("idle", storage_used=0, last_used_at=NOW - timedelta(days=60)),
    ]
    rng = random.Random(3)
    picks = {select_account(pool, 1, rng=rng, now=NOW, top_k=1).id for _ in range(50)}
    assert picks == {"idle"}


def test_recency_score_saturates_after_horizon() -> None:
    assert recency_score(None, NOW) == 1.0
    assert recency_score(NOW, NOW) == 0.0
    assert recency_score(NOW - timedelta(days=15), NOW) == 0.5
    assert recency_score(NOW - timedelta(days=90), NOW) == 1.0
    # Naive timestamps from SQLite are read as UTC.
    assert recency_score((NOW - timedelta(days=15)).replace(tzinfo=None), NOW) == 0.5


def test_score_combines_weighted_dimensions() -> None:
    account = _account("a", storage_used=500, last_used_at=NOW - timedelta(days=30))
    scored = score_account(account, NOW)
    assert abs(scored.score - (0.35 * 0.5 + 0.25 + 0.25 + 0.15)) < 1e-9
