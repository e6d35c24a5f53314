"""Pluggable key selection strategies.

Algorithms are pure: they read the eligible records and a
:class:`SelectionContext` and return a :class:`Selection` naming the chosen
key plus the bookkeeping the manager should apply. No algorithm mutates a
record; the manager owns the single commit path.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

from .errors import PoolExhaustedError
from .models import DEFAULT_GROUP_ID, KeyRecord, PoolGroup, parse_iso, utc_day
from .settings import PoolConfig

LOG = logging.getLogger("keypool.selection")

NEVER_USED_HOURS = 24.0


@dataclass(frozen=True)
class TokenUsage:
    """Externally reported token usage for one key."""

    used: int = 0
    remaining: int = 0
    allowance: int = 0

    @property
    def used_ratio(self) -> float:
        return self.used / self.allowance if self.allowance > 0 else 0.0


@dataclass
class UsageDelta:
    usage_increment: int = 1
    track_window: bool = False
    next_rotation_index: Optional[int] = None


@dataclass
class Selection:
    key: KeyRecord
    delta: UsageDelta = field(default_factory=UsageDelta)
    score: Optional[float] = None


class ScoreCache:
    """Ephemeral composite-score cache, never persisted."""

    def __init__(self, ttl_seconds: float = 300.0) -> None:
        self._ttl = ttl_seconds
        self._entries: dict[str, tuple[float, float]] = {}

    def get(self, key_id: str, now: float) -> Optional[float]:
        entry = self._entries.get(key_id)
        if entry is None:
            return None
        score, ts = entry
        if now - ts > self._ttl:
            del self._entries[key_id]
            return None
        return score

    def put(self, key_id: str, score: float, now: float) -> None:
        self._entries[key_id] = (score, now)

    def invalidate(self, key_id: str) -> None:
        self._entries.pop(key_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class SelectionContext:
    config: PoolConfig = field(default_factory=PoolConfig)
    rotation_index: int = 0
    usage: Mapping[str, TokenUsage] = field(default_factory=dict)
    scores: ScoreCache = field(default_factory=ScoreCache)
    rng: random.Random = field(default_factory=random.Random)
    now: float = field(default_factory=time.time)
    quota_warned: set[str] = field(default_factory=set)


# ── Scoring helpers ───────────────────────────────────────────────────────────


def success_ratio(record: KeyRecord, default: float = 0.0) -> float:
    if record.total_requests <= 0:
        return default
    return record.success_requests / record.total_requests


def composite_score(record: KeyRecord, now: float) -> float:
    """Blend success rate, recency and experience into a 0-100 score."""
    last_used = parse_iso(record.last_used_at)
    if last_used is None:
        hours_idle = NEVER_USED_HOURS
    else:
        hours_idle = max(0.0, (now - last_used) / 3600.0)
    freshness = max(0.0, 100.0 - hours_idle * 4)
    experience = min(100.0, record.total_requests / 10)
    score = success_ratio(record) * 100 * 0.6 + freshness * 0.3 + experience * 0.1
    return round(score, 2)


def weighted_pick(weights: Sequence[float], draw: float) -> int:
    """Index of the first item whose cumulative probability exceeds ``draw``.

    Falls back to the last index when rounding keeps the running total
    below the draw.
    """
    if not weights:
        raise PoolExhaustedError("no candidates to choose from")
    total = sum(weights)
    cumulative = 0.0
    for idx, weight in enumerate(weights):
        cumulative += weight / total
        if draw < cumulative:
            return idx
    return len(weights) - 1


def window_load(record: KeyRecord, now: float, window_hours: float) -> tuple[int, int]:
    """Tokens and requests recorded for a key inside the sliding window."""
    cutoff = now - window_hours * 3600.0
    tokens = 0
    requests = 0
    for entry in record.usage_history:
        ts = parse_iso(entry.get("timestamp"))
        if ts is None or ts < cutoff:
            continue
        tokens += int(entry.get("tokens_used") or 0)
        requests += 1
    return tokens, requests


# ── Algorithms ────────────────────────────────────────────────────────────────


class SelectionAlgorithm:
    name = ""

    def select(
        self, eligible: Sequence[KeyRecord], ctx: SelectionContext
    ) -> Selection:
        raise NotImplementedError

    def _require(self, eligible: Sequence[KeyRecord]) -> None:
        if not eligible:
            raise PoolExhaustedError(
                f"no eligible keys for {self.name or 'selection'}"
            )


class RoundRobin(SelectionAlgorithm):
    name = "round-robin"

    def select(self, eligible, ctx):
        self._require(eligible)
        n = len(eligible)
        index = ctx.rotation_index % n
        return Selection(
            eligible[index], UsageDelta(next_rotation_index=(index + 1) % n)
        )


class RandomChoice(SelectionAlgorithm):
    name = "random"

    def select(self, eligible, ctx):
        self._require(eligible)
        index = min(int(ctx.rng.random() * len(eligible)), len(eligible) - 1)
        return Selection(eligible[index])


class LeastUsed(SelectionAlgorithm):
    name = "least-used"

    def select(self, eligible, ctx):
        self._require(eligible)
        return Selection(min(eligible, key=lambda r: r.usage_count))


class WeightedScore(SelectionAlgorithm):
    name = "weighted-score"

    def select(self, eligible, ctx):
        self._require(eligible)
        if len(eligible) == 1:
            return Selection(eligible[0])
        scores = []
        for record in eligible:
            score = ctx.scores.get(record.id, ctx.now)
            if score is None:
                score = composite_score(record, ctx.now)
                ctx.scores.put(record.id, score, ctx.now)
            scores.append(score)
        index = weighted_pick([max(1.0, s) for s in scores], ctx.rng.random())
        return Selection(eligible[index], score=scores[index])


class LeastTokenUsed(SelectionAlgorithm):
    name = "least-token-used"

    def select(self, eligible, ctx):
        self._require(eligible)
        if not ctx.usage:
            return Selection(eligible[0])
        ranked = sorted(
            eligible, key=lambda r: ctx.usage.get(r.id, TokenUsage()).used
        )
        return Selection(ranked[0])


class MaxRemaining(SelectionAlgorithm):
    name = "max-remaining"

    def select(self, eligible, ctx):
        self._require(eligible)
        if not ctx.usage:
            return Selection(eligible[0])
        ranked = sorted(
            eligible,
            key=lambda r: ctx.usage.get(r.id, TokenUsage()).remaining,
            reverse=True,
        )
        return Selection(ranked[0])


class WeightedUsage(SelectionAlgorithm):
    name = "weighted-usage"

    @staticmethod
    def score(record: KeyRecord, usage: TokenUsage) -> float:
        allowance = usage.allowance if usage.allowance > 0 else 1
        remaining_part = usage.remaining / allowance * 100 * 0.4
        headroom_part = (1 - usage.used / allowance) * 100 * 0.3
        success_part = success_ratio(record, default=1.0) * 100 * 0.3
        return remaining_part + headroom_part + success_part

    def select(self, eligible, ctx):
        self._require(eligible)
        if not ctx.usage:
            return Selection(eligible[0])
        best = eligible[0]
        best_score = None
        for record in eligible:
            s = self.score(record, ctx.usage.get(record.id, TokenUsage()))
            if best_score is None or s > best_score:
                best, best_score = record, s
        return Selection(best, score=best_score)


class QuotaAware(SelectionAlgorithm):
    name = "quota-aware"

    def _over_quota(self, record: KeyRecord, ctx: SelectionContext) -> bool:
        quota = ctx.config.quota
        daily = record.daily_usage.get(utc_day(ctx.now), 0)
        if daily >= quota.per_key_daily_limit:
            return True
        usage = ctx.usage.get(record.id)
        if usage is not None and (
            usage.used >= quota.per_key_monthly_limit or usage.remaining <= 0
        ):
            return True
        self._maybe_warn(record, daily, usage, ctx)
        return False

    def _maybe_warn(
        self,
        record: KeyRecord,
        daily: int,
        usage: Optional[TokenUsage],
        ctx: SelectionContext,
    ) -> None:
        if record.id in ctx.quota_warned:
            return
        quota = ctx.config.quota
        fractions = [daily / quota.per_key_daily_limit]
        if usage is not None:
            fractions.append(usage.used / quota.per_key_monthly_limit)
            if usage.allowance > 0:
                fractions.append(usage.used_ratio)
        consumed = max(fractions)
        if consumed >= quota.warning_threshold:
            ctx.quota_warned.add(record.id)
            LOG.warning(
                "Key %s has consumed %.0f%% of its quota", record.id, consumed * 100
            )

    def select(self, eligible, ctx):
        self._require(eligible)
        candidates = [r for r in eligible if not self._over_quota(r, ctx)]
        if not candidates:
            raise PoolExhaustedError(
                f"all {len(eligible)} eligible keys have reached their quota limits"
            )
        if not ctx.usage:
            return Selection(candidates[0])
        best = max(
            candidates,
            key=lambda r: ctx.usage.get(r.id, TokenUsage()).remaining,
        )
        return Selection(best)


class TimeWindow(SelectionAlgorithm):
    name = "time-window"

    def select(self, eligible, ctx):
        self._require(eligible)
        hours = ctx.config.time_window_hours
        ranked = sorted(eligible, key=lambda r: window_load(r, ctx.now, hours))
        return Selection(ranked[0], UsageDelta(track_window=True))


ALGORITHMS: dict[str, SelectionAlgorithm] = {
    algo.name: algo
    for algo in (
        RoundRobin(),
        RandomChoice(),
        LeastUsed(),
        WeightedScore(),
        LeastTokenUsed(),
        MaxRemaining(),
        WeightedUsage(),
        QuotaAware(),
        TimeWindow(),
    )
}

def get_algorithm(name: str) -> SelectionAlgorithm:
    try:
        return ALGORITHMS[name]
    except KeyError:
        LOG.warning("Unknown algorithm %r, falling back to round-robin", name)
        return ALGORITHMS["round-robin"]


# ── Tier filtering ────────────────────────────────────────────────────────────


def filter_by_tier(
    eligible: Sequence[KeyRecord],
    groups: Sequence[PoolGroup],
    auto_fallback: bool = True,
) -> list[KeyRecord]:
    """Narrow eligible keys to the highest-priority non-empty pool group.

    Keys without a group, or pointing at a group that no longer exists, form
    the implicit ``default`` tier which is consulted last. With
    ``auto_fallback`` off only the top tier is consulted.
    """
    ordered = sorted(groups, key=lambda g: g.priority)
    known = {g.id for g in ordered}
    tiers: list[tuple[str, list[KeyRecord]]] = [
        (g.id, [r for r in eligible if r.pool_group == g.id]) for g in ordered
    ]
    tiers.append(
        (DEFAULT_GROUP_ID, [r for r in eligible if r.pool_group not in known])
    )
    if not auto_fallback:
        gid, keys = tiers[0]
        if not keys:
            raise PoolExhaustedError(
                f"pool group '{gid}' has no eligible keys and auto-fallback is disabled"
            )
        return keys
    for gid, keys in tiers:
        if keys:
            LOG.debug("Tier '%s' selected with %d eligible keys", gid, len(keys))
            return keys
    raise PoolExhaustedError("no pool group has eligible keys")
