"""Tests for the selection algorithms and tier filtering."""

import logging
import random

import pytest

from keypool.errors import PoolExhaustedError
from keypool.models import DEFAULT_GROUP_ID, HealthResult, KeyRecord, PoolGroup, now_iso, utc_day
from keypool.selection import (
    ALGORITHMS,
    ScoreCache,
    SelectionContext,
    TokenUsage,
    WeightedUsage,
    composite_score,
    filter_by_tier,
    get_algorithm,
    weighted_pick,
    window_load,
)
from keypool.settings import ALGORITHM_NAMES, PoolConfig

NOW = 1_760_000_000.0
HOUR = 3600.0


def rec(key_id: str, **kw) -> KeyRecord:
    fields = {
        "id": key_id,
        "key": f"fk-{key_id}",
        "provider": "factory",
        "created_at": now_iso(NOW - 10 * HOUR),
        "last_test_result": HealthResult.SUCCESS,
    }
    fields.update(kw)
    return KeyRecord(**fields)


class FixedRandom(random.Random):
    """Returns a scripted sequence of draws."""

    def __init__(self, *draws: float) -> None:
        super().__init__(0)
        self._draws = list(draws)

    def random(self) -> float:
        return self._draws.pop(0)


class NoRandom(random.Random):
    def random(self) -> float:
        raise AssertionError("no random draw expected")


def ctx(**kw) -> SelectionContext:
    kw.setdefault("now", NOW)
    return SelectionContext(**kw)


# ── 1. Registry ──────────────────────────────────────────────────────────


def test_registry_matches_configurable_names() -> None:
    assert set(ALGORITHMS) == set(ALGORITHM_NAMES)
    assert get_algorithm("least-used").name == "least-used"
    assert get_algorithm("no-such-thing").name == "round-robin"


@pytest.mark.parametrize("name", ALGORITHM_NAMES)
def test_every_algorithm_rejects_empty_input(name: str) -> None:
    with pytest.raises(PoolExhaustedError):
        ALGORITHMS[name].select([], ctx())


# ── 2. Round-robin ───────────────────────────────────────────────────────


def test_round_robin_visits_each_key_once_per_cycle() -> None:
    keys = [rec("a"), rec("b"), rec("c")]
    algo = ALGORITHMS["round-robin"]
    cursor = 0
    seen = []
    for _ in range(3):
        sel = algo.select(keys, ctx(rotation_index=cursor))
        seen.append(sel.key.id)
        cursor = sel.delta.next_rotation_index
    assert sorted(seen) == ["a", "b", "c"]
    assert cursor == 0


def test_round_robin_cursor_survives_shrinking_pool() -> None:
    keys = [rec("a"), rec("b")]
    sel = ALGORITHMS["round-robin"].select(keys, ctx(rotation_index=5))
    assert sel.key.id == "b"
    assert sel.delta.next_rotation_index == 0


# ── 3. Random / least-used ───────────────────────────────────────────────


def test_random_maps_draw_onto_index() -> None:
    keys = [rec("a"), rec("b"), rec("c")]
    algo = ALGORITHMS["random"]
    assert algo.select(keys, ctx(rng=FixedRandom(0.0))).key.id == "a"
    assert algo.select(keys, ctx(rng=FixedRandom(0.5))).key.id == "b"
    assert algo.select(keys, ctx(rng=FixedRandom(0.9999))).key.id == "c"


def test_least_used_prefers_lowest_count_first_on_ties() -> None:
    keys = [rec("a", usage_count=4), rec("b", usage_count=1), rec("c", usage_count=1)]
    assert ALGORITHMS["least-used"].select(keys, ctx()).key.id == "b"


# ── 4. Weighted score ────────────────────────────────────────────────────


def test_composite_score_for_unused_key_treats_it_as_idle_for_a_day() -> None:
    # freshness 100 - 24*4 = 4 -> 4 * 0.3
    assert composite_score(rec("a"), NOW) == 1.2


def test_composite_score_blends_success_freshness_experience() -> None:
    r = rec("a", total_requests=10, success_requests=10, last_used_at=now_iso(NOW - HOUR))
    # 60 + 96*0.3 + 1*0.1
    assert composite_score(r, NOW) == 88.9


def test_composite_score_freshness_bottoms_out() -> None:
    r = rec("a", total_requests=2000, success_requests=1000, last_used_at=now_iso(NOW - 30 * HOUR))
    assert composite_score(r, NOW) == 40.0


def test_weighted_score_single_key_needs_no_draw() -> None:
    only = rec("solo")
    sel = ALGORITHMS["weighted-score"].select([only], ctx(rng=NoRandom()))
    assert sel.key is only


def test_weighted_score_draw_follows_cumulative_probability() -> None:
    strong = rec("strong", total_requests=100, success_requests=100, last_used_at=now_iso(NOW))
    weak = rec("weak")
    algo = ALGORITHMS["weighted-score"]
    assert algo.select([strong, weak], ctx(rng=FixedRandom(0.5))).key.id == "strong"
    assert algo.select([strong, weak], ctx(rng=FixedRandom(0.999))).key.id == "weak"


def test_weighted_score_uses_cached_scores() -> None:
    cache = ScoreCache(ttl_seconds=300)
    cache.put("a", 99.0, NOW)
    cache.put("b", 1.0, NOW)
    sel = ALGORITHMS["weighted-score"].select(
        [rec("a"), rec("b")], ctx(scores=cache, rng=FixedRandom(0.95))
    )
    assert sel.key.id == "a"
    assert sel.score == 99.0


def test_weighted_pick_boundaries() -> None:
    assert weighted_pick([1.0, 1.0], 0.0) == 0
    assert weighted_pick([1.0, 1.0], 0.5) == 1
    # The running total never exceeds a draw of 1.0: last element fallback.
    assert weighted_pick([1.0, 1.0], 1.0) == 1
    assert weighted_pick([1.0, 1.0, 1.0], 0.9999999999999999) == 2
    with pytest.raises(PoolExhaustedError):
        weighted_pick([], 0.1)


def test_score_cache_expires_after_ttl() -> None:
    cache = ScoreCache(ttl_seconds=300)
    cache.put("a", 50.0, NOW)
    assert cache.get("a", NOW + 299) == 50.0
    assert cache.get("a", NOW + 301) is None
    assert len(cache) == 0


# ── 5. Token-usage driven algorithms ────────────────────────────────────


@pytest.mark.parametrize("name", ["least-token-used", "max-remaining", "weighted-usage"])
def test_usage_algorithms_fail_open_without_snapshot(name: str) -> None:
    keys = [rec("a"), rec("b")]
    assert ALGORITHMS[name].select(keys, ctx()).key.id == "a"


def test_least_token_used_and_max_remaining() -> None:
    keys = [rec("a"), rec("b"), rec("c")]
    usage = {
        "a": TokenUsage(used=500, remaining=500, allowance=1000),
        "b": TokenUsage(used=100, remaining=100, allowance=200),
        "c": TokenUsage(used=300, remaining=9700, allowance=10000),
    }
    assert ALGORITHMS["least-token-used"].select(keys, ctx(usage=usage)).key.id == "b"
    assert ALGORITHMS["max-remaining"].select(keys, ctx(usage=usage)).key.id == "c"


def test_weighted_usage_scores_remaining_headroom_and_success() -> None:
    healthy = rec("healthy", total_requests=10, success_requests=10)
    flaky = rec("flaky", total_requests=10, success_requests=2)
    usage = {
        "healthy": TokenUsage(used=500, remaining=500, allowance=1000),
        "flaky": TokenUsage(used=100, remaining=900, allowance=1000),
    }
    # healthy: 20 + 15 + 30 = 65; flaky: 36 + 27 + 6 = 69
    assert WeightedUsage.score(healthy, usage["healthy"]) == pytest.approx(65.0)
    assert WeightedUsage.score(flaky, usage["flaky"]) == pytest.approx(69.0)
    sel = ALGORITHMS["weighted-usage"].select([healthy, flaky], ctx(usage=usage))
    assert sel.key.id == "flaky"


# ── 6. Quota-aware ───────────────────────────────────────────────────────


def test_quota_aware_excludes_key_at_daily_cap() -> None:
    config = PoolConfig()
    config.quota.per_key_daily_limit = 100
    today = utc_day(NOW)
    capped = rec("capped", daily_usage={today: 100})
    fresh = rec("fresh", daily_usage={today: 3})
    sel = ALGORITHMS["quota-aware"].select([capped, fresh], ctx(config=config))
    assert sel.key.id == "fresh"


def test_quota_aware_ignores_usage_from_previous_days() -> None:
    config = PoolConfig()
    config.quota.per_key_daily_limit = 100
    old = rec("old", daily_usage={utc_day(NOW - 48 * HOUR): 500})
    assert ALGORITHMS["quota-aware"].select([old], ctx(config=config)).key.id == "old"


def test_quota_aware_uses_snapshot_limits_and_prefers_most_remaining() -> None:
    config = PoolConfig()
    config.quota.per_key_monthly_limit = 1000
    usage = {
        "spent": TokenUsage(used=1000, remaining=5000, allowance=6000),
        "empty": TokenUsage(used=10, remaining=0, allowance=10),
        "small": TokenUsage(used=10, remaining=50, allowance=60),
        "big": TokenUsage(used=10, remaining=80, allowance=90),
    }
    keys = [rec(k) for k in ("spent", "empty", "small", "big")]
    sel = ALGORITHMS["quota-aware"].select(keys, ctx(config=config, usage=usage))
    assert sel.key.id == "big"


def test_quota_aware_all_capped_is_exhaustion() -> None:
    config = PoolConfig()
    config.quota.per_key_daily_limit = 1
    today = utc_day(NOW)
    keys = [rec("a", daily_usage={today: 1}), rec("b", daily_usage={today: 7})]
    with pytest.raises(PoolExhaustedError, match="quota"):
        ALGORITHMS["quota-aware"].select(keys, ctx(config=config))


def test_quota_aware_warns_once_per_key(caplog: pytest.LogCaptureFixture) -> None:
    config = PoolConfig()
    config.quota.per_key_daily_limit = 10
    warned: set[str] = set()
    key = rec("warm", daily_usage={utc_day(NOW): 9})
    with caplog.at_level(logging.WARNING, logger="keypool.selection"):
        for _ in range(3):
            ALGORITHMS["quota-aware"].select([key], ctx(config=config, quota_warned=warned))
    assert warned == {"warm"}
    assert sum("warm" in r.getMessage() for r in caplog.records) == 1


# ── 7. Time-window ───────────────────────────────────────────────────────


def test_time_window_prefers_least_loaded_inside_window() -> None:
    busy = rec("busy", usage_history=[
        {"timestamp": now_iso(NOW - HOUR), "tokens_used": 5000},
    ])
    idle = rec("idle", usage_history=[
        {"timestamp": now_iso(NOW - 30 * HOUR), "tokens_used": 90000},
        {"timestamp": now_iso(NOW - 2 * HOUR), "tokens_used": 100},
    ])
    assert window_load(idle, NOW, 24) == (100, 1)
    sel = ALGORITHMS["time-window"].select([busy, idle], ctx())
    assert sel.key.id == "idle"
    assert sel.delta.track_window is True


# ── 8. Tier filtering ────────────────────────────────────────────────────


def test_tier_filter_skips_empty_high_priority_group() -> None:
    groups = [PoolGroup("gold", "Gold", 1), PoolGroup("silver", "Silver", 2)]
    keys = [rec("s1", pool_group="silver"), rec("d1"), rec("s2", pool_group="silver")]
    assert [k.id for k in filter_by_tier(keys, groups)] == ["s1", "s2"]


def test_tier_filter_orders_by_priority_not_declaration() -> None:
    groups = [PoolGroup("late", "Late", 9), PoolGroup("early", "Early", 3)]
    keys = [rec("l", pool_group="late"), rec("e", pool_group="early")]
    assert [k.id for k in filter_by_tier(keys, groups)] == ["e"]


def test_tier_filter_falls_back_to_default_group() -> None:
    groups = [PoolGroup("gold", "Gold", 1)]
    keys = [rec("x"), rec("y", pool_group=DEFAULT_GROUP_ID), rec("z", pool_group="deleted")]
    assert [k.id for k in filter_by_tier(keys, groups)] == ["x", "y", "z"]


def test_tier_filter_without_fallback_only_consults_top_group() -> None:
    groups = [PoolGroup("gold", "Gold", 1), PoolGroup("silver", "Silver", 2)]
    keys = [rec("s1", pool_group="silver")]
    with pytest.raises(PoolExhaustedError, match="gold"):
        filter_by_tier(keys, groups, auto_fallback=False)
    assert filter_by_tier(keys, [], auto_fallback=False) == keys


def test_tier_filter_with_nothing_eligible() -> None:
    with pytest.raises(PoolExhaustedError):
        filter_by_tier([], [PoolGroup("gold", "Gold", 1)])
