"""The key pool: records, selection, outcomes and persistence in one place.

:class:`KeyPoolManager` is the only owner of the in-memory keys, groups and
config, and the only writer to the :class:`~keypool.store.StateStore`.

Selection and counter updates happen synchronously with no ``await`` in
between, so overlapping requests on the event loop cannot interleave inside
a selection. The pool is not safe to share across threads.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from .errors import (
    ConflictError,
    DuplicateKeyError,
    KeyPoolError,
    NotFoundError,
    PoolExhaustedError,
    ValidationError,
)
from .models import (
    DAILY_USAGE_DAYS,
    DEFAULT_GROUP_ID,
    USAGE_HISTORY_LIMIT,
    HealthResult,
    KeyRecord,
    KeyStatus,
    PoolGroup,
    generate_key_id,
    mask_secret,
    normalize_credential,
    now_iso,
    parse_iso,
    utc_day,
    validate_group_id,
)
from .probe import HealthProbe, ProbeOutcome
from .selection import (
    ScoreCache,
    Selection,
    SelectionContext,
    TokenUsage,
    filter_by_tier,
    get_algorithm,
)
from .settings import PoolConfig, apply_patch, parse_patch, resolve_config
from .store import DebouncedWriter, StateStore

LOG = logging.getLogger("keypool.manager")

MANUAL_BAN_REASON = "Banned manually"
MAX_BATCH_CONCURRENCY = 50
MAX_PAGE_SIZE = 1000
STATUS_FILTERS = ("all",) + tuple(s.value for s in KeyStatus)

UsageProvider = Callable[[], Mapping[str, Any]]


@dataclass(frozen=True)
class KeyLease:
    """The key handed to a request handler."""

    id: str
    key: str
    provider: str


class KeyPoolManager:
    def __init__(
        self,
        store: StateStore,
        *,
        probe: Optional[HealthProbe] = None,
        usage_provider: Optional[UsageProvider] = None,
        environ: Optional[Mapping[str, str]] = None,
        save_debounce: float = 1.0,
        score_cache_ttl: float = 300.0,
        notes_max_length: int = 1000,
        batch_pause: float = 1.0,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.probe = probe
        self.notes_max_length = notes_max_length
        self.batch_pause = batch_pause
        self._usage_provider = usage_provider
        self._environ = environ
        self._rng = rng or random.Random()
        self._clock = clock
        self._keys: dict[str, KeyRecord] = {}
        self._by_credential: dict[str, str] = {}
        self._groups: dict[str, PoolGroup] = {}
        self._config = PoolConfig()
        self._rotation_index = 0
        self._scores = ScoreCache(score_cache_ttl)
        self._quota_warned: set[str] = set()
        self._writer = DebouncedWriter(store, self.snapshot, save_debounce)

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def load(self) -> None:
        """Load persisted state and resolve the active config."""
        data = await self.store.load()
        self._keys.clear()
        self._by_credential.clear()
        self._groups.clear()
        self._scores.clear()
        if data is None:
            self._config = resolve_config(None, self._environ)
            LOG.info("No persisted pool state found, starting with an empty pool")
            await self._writer.write_now()
            return
        for item in data.get("keys") or []:
            try:
                record = KeyRecord.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                LOG.warning("Skipping malformed key record: %s", exc)
                continue
            if record.id in self._keys or record.key in self._by_credential:
                LOG.warning("Skipping duplicate key record %s", record.id)
                continue
            self._keys[record.id] = record
            self._by_credential[record.key] = record.id
        for item in data.get("poolGroups") or []:
            try:
                group = PoolGroup.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                LOG.warning("Skipping malformed pool group: %s", exc)
                continue
            self._groups[group.id] = group
        stats = data.get("stats") or {}
        self._rotation_index = max(0, int(stats.get("last_rotation_index") or 0))
        self._config = resolve_config(data.get("config"), self._environ)
        LOG.info(
            "Loaded %d keys (%d eligible) and %d pool groups, algorithm=%s",
            len(self._keys),
            len(self._eligible()),
            len(self._groups),
            self._config.algorithm,
        )

    async def flush(self) -> None:
        await self._writer.flush()

    async def close(self) -> None:
        await self._writer.close()
        self.store.close()

    def snapshot(self) -> dict[str, Any]:
        """The persisted document: keys, derived stats, groups and config."""
        stats = self._counts()
        stats["last_rotation_index"] = self._rotation_index
        return {
            "keys": [r.to_dict() for r in self._keys.values()],
            "stats": stats,
            "poolGroups": [g.to_dict() for g in self._groups.values()],
            "config": self._config.to_dict(),
        }

    @property
    def config(self) -> PoolConfig:
        return self._config

    @property
    def pending_write(self) -> bool:
        return self._writer.dirty

    def __len__(self) -> int:
        return len(self._keys)

    def records(self) -> list[KeyRecord]:
        return list(self._keys.values())

    # ── Validation helpers ────────────────────────────────────────────────────

    def _require(self, key_id: str) -> KeyRecord:
        record = self._keys.get(key_id)
        if record is None:
            raise NotFoundError(f"key '{key_id}' not found")
        return record

    def _require_group(self, group_id: str) -> PoolGroup:
        group = self._groups.get(group_id)
        if group is None:
            raise NotFoundError(f"pool group '{group_id}' not found")
        return group

    def _group_ref(self, group_id: Optional[str]) -> Optional[str]:
        if group_id is None or not str(group_id).strip():
            return None
        gid = str(group_id).strip()
        if gid == DEFAULT_GROUP_ID:
            return DEFAULT_GROUP_ID
        self._require_group(gid)
        return gid

    def _check_notes(self, notes: Any) -> str:
        if notes is None:
            return ""
        if not isinstance(notes, str):
            raise ValidationError("notes must be a string")
        if len(notes) > self.notes_max_length:
            raise ValidationError(
                f"notes are too long (max {self.notes_max_length} characters)"
            )
        return notes

    def _now(self) -> float:
        return self._clock()

    # ── Key CRUD ──────────────────────────────────────────────────────────────

    def _insert(
        self, credential: str, provider: str, notes: str, group: Optional[str]
    ) -> KeyRecord:
        now = self._now()
        key_id = generate_key_id(now)
        while key_id in self._keys:
            key_id = generate_key_id(now)
        record = KeyRecord(
            id=key_id,
            key=credential,
            provider=provider,
            created_at=now_iso(now),
            pool_group=group,
            notes=notes,
        )
        self._keys[key_id] = record
        self._by_credential[credential] = key_id
        return record

    def _remove(self, record: KeyRecord) -> None:
        self._keys.pop(record.id, None)
        self._by_credential.pop(record.key, None)
        self._scores.invalidate(record.id)
        self._quota_warned.discard(record.id)

    async def add_key(
        self, credential: str, notes: str = "", pool_group: Optional[str] = None
    ) -> KeyRecord:
        credential, provider = normalize_credential(credential)
        notes = self._check_notes(notes)
        group = self._group_ref(pool_group)
        if credential in self._by_credential:
            raise DuplicateKeyError()
        record = self._insert(credential, provider, notes, group)
        await self._writer.write_now()
        LOG.info("Added %s key %s (%s)", provider, record.id, mask_secret(credential))
        return record

    async def import_keys(
        self, credentials: Iterable[Any], pool_group: Optional[str] = None
    ) -> dict[str, Any]:
        """Add many keys; bad lines are counted, never fatal to the batch."""
        group = self._group_ref(pool_group)
        result: dict[str, Any] = {"success": 0, "duplicate": 0, "invalid": 0, "errors": []}
        for lineno, raw in enumerate(credentials, start=1):
            if raw is None or (isinstance(raw, str) and not raw.strip()):
                result["invalid"] += 1
                continue
            try:
                credential, provider = normalize_credential(raw)
            except ValidationError as exc:
                result["invalid"] += 1
                result["errors"].append(f"Line {lineno}: {exc.detail}")
                continue
            if credential in self._by_credential:
                result["duplicate"] += 1
                continue
            self._insert(credential, provider, "", group)
            result["success"] += 1
        if result["success"]:
            await self._writer.write_now()
        LOG.info(
            "Imported keys: %d added, %d duplicate, %d invalid",
            result["success"], result["duplicate"], result["invalid"],
        )
        return result

    async def delete_key(self, key_id: str) -> KeyRecord:
        record = self._require(key_id)
        self._remove(record)
        await self._writer.write_now()
        LOG.info("Deleted key %s", key_id)
        return record

    async def delete_by_status(self, status: str) -> int:
        try:
            target = KeyStatus(status)
        except ValueError as exc:
            raise ValidationError(
                "status must be one of active, disabled, banned"
            ) from exc
        doomed = [r for r in self._keys.values() if r.status == target]
        for record in doomed:
            self._remove(record)
        if doomed:
            await self._writer.write_now()
        LOG.info("Deleted %d %s keys", len(doomed), target.value)
        return len(doomed)

    def _apply_ban(self, record: KeyRecord, reason: str, now: float) -> None:
        if record.status != KeyStatus.BANNED or not record.banned_at:
            record.banned_at = now_iso(now)
        record.status = KeyStatus.BANNED
        record.banned_reason = reason
        self._scores.invalidate(record.id)

    async def toggle_status(self, key_id: str, new_status: str) -> KeyRecord:
        try:
            status = KeyStatus(new_status)
        except ValueError as exc:
            raise ValidationError(
                "status must be one of active, disabled, banned"
            ) from exc
        record = self._require(key_id)
        if record.status == status:
            return record
        previous = record.status
        if status == KeyStatus.BANNED:
            self._apply_ban(record, MANUAL_BAN_REASON, self._now())
        else:
            record.banned_at = None
            record.banned_reason = None
            if status == KeyStatus.ACTIVE:
                record.consecutive_errors = 0
            record.status = status
        await self._writer.write_now()
        LOG.info("Key %s status %s -> %s", key_id, previous.value, status.value)
        return record

    async def update_notes(self, key_id: str, notes: str) -> KeyRecord:
        text = self._check_notes(notes)
        record = self._require(key_id)
        record.notes = text
        await self._writer.write_now()
        return record

    async def assign_pool_group(
        self, key_id: str, group_id: Optional[str]
    ) -> KeyRecord:
        group = self._group_ref(group_id)
        record = self._require(key_id)
        record.pool_group = group
        await self._writer.write_now()
        return record

    def get_key(self, key_id: str) -> KeyRecord:
        return self._require(key_id)

    def get_keys(
        self, page: int = 1, page_size: int = 10, status: str = "all"
    ) -> dict[str, Any]:
        if status not in STATUS_FILTERS:
            raise ValidationError(f"status must be one of {', '.join(STATUS_FILTERS)}")
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(f"page size must be between 1 and {MAX_PAGE_SIZE}")
        items = [
            r for r in self._keys.values() if status == "all" or r.status.value == status
        ]
        start = (page - 1) * page_size
        return {
            "items": items[start:start + page_size],
            "pagination": {
                "page": page,
                "limit": page_size,
                "total": len(items),
                "total_pages": math.ceil(len(items) / page_size),
            },
        }

    def export_keys(self, status: str = "all") -> list[str]:
        if status not in STATUS_FILTERS:
            raise ValidationError(f"status must be one of {', '.join(STATUS_FILTERS)}")
        return [
            r.key for r in self._keys.values() if status == "all" or r.status.value == status
        ]

    # ── Selection ─────────────────────────────────────────────────────────────

    def _eligible(self) -> list[KeyRecord]:
        return [r for r in self._keys.values() if r.eligible]

    def _exhausted_message(self) -> str:
        total = len(self._keys)
        if total == 0:
            return "key pool is empty: add keys before routing requests"
        active = [r for r in self._keys.values() if r.status == KeyStatus.ACTIVE]
        if not active:
            return f"no active keys: all {total} keys are disabled or banned"
        untested = sum(1 for r in active if r.last_test_result == HealthResult.UNTESTED)
        failed = len(active) - untested
        return (
            f"no key has passed health testing ({len(active)} active: "
            f"{untested} untested, {failed} failed); run a key test"
        )

    def use_usage_provider(self, provider: Optional[UsageProvider]) -> None:
        """Swap the token-usage snapshot source; ``None`` means no snapshot."""
        self._usage_provider = provider

    def local_usage(self) -> dict[str, TokenUsage]:
        """Tokens recorded by this proxy per key, measured against the monthly quota."""
        allowance = self._config.quota.per_key_monthly_limit
        return {
            r.id: TokenUsage(
                used=r.tokens_used,
                remaining=max(0, allowance - r.tokens_used),
                allowance=allowance,
            )
            for r in self._keys.values()
        }

    def _usage_snapshot(self) -> dict[str, TokenUsage]:
        if self._usage_provider is None:
            return {}
        try:
            raw = self._usage_provider() or {}
        except Exception as exc:  # collaborator failure degrades to no snapshot
            LOG.warning("Token usage snapshot unavailable: %s", exc)
            return {}
        out: dict[str, TokenUsage] = {}
        for key_id, value in raw.items():
            if isinstance(value, TokenUsage):
                out[key_id] = value
            elif isinstance(value, Mapping):
                out[key_id] = TokenUsage(
                    used=int(value.get("used") or 0),
                    remaining=int(value.get("remaining") or 0),
                    allowance=int(value.get("allowance") or 0),
                )
        return out

    def get_next_key(self) -> KeyLease:
        """Pick a key for one upstream request and record the selection."""
        candidates = self._eligible()
        if not candidates:
            raise PoolExhaustedError(self._exhausted_message())
        config = self._config
        if config.multi_tier.enabled:
            candidates = filter_by_tier(
                candidates, list(self._groups.values()), config.multi_tier.auto_fallback
            )
        now = self._now()
        ctx = SelectionContext(
            config=config,
            rotation_index=self._rotation_index,
            usage=self._usage_snapshot(),
            scores=self._scores,
            rng=self._rng,
            now=now,
            quota_warned=self._quota_warned,
        )
        selection = get_algorithm(config.algorithm).select(candidates, ctx)
        self._commit(selection, now)
        self._writer.schedule()
        record = selection.key
        LOG.debug(
            "Selected key %s via %s (%d candidates)",
            record.id, config.algorithm, len(candidates),
        )
        return KeyLease(record.id, record.key, record.provider)

    def _commit(self, selection: Selection, now: float) -> None:
        record = selection.key
        delta = selection.delta
        record.usage_count += delta.usage_increment
        record.last_used_at = now_iso(now)
        day = utc_day(now)
        record.daily_usage[day] = record.daily_usage.get(day, 0) + delta.usage_increment
        if len(record.daily_usage) > DAILY_USAGE_DAYS:
            for stale in sorted(record.daily_usage)[:-DAILY_USAGE_DAYS]:
                del record.daily_usage[stale]
        if delta.track_window:
            record.usage_history.append({"timestamp": now_iso(now), "tokens_used": 0})
            self._prune_history(record, now)
        if delta.next_rotation_index is not None:
            self._rotation_index = delta.next_rotation_index
        self._scores.invalidate(record.id)

    def _prune_history(self, record: KeyRecord, now: float) -> None:
        cutoff = now - self._config.time_window_hours * 3600.0
        kept = [
            e for e in record.usage_history if (parse_iso(e.get("timestamp")) or 0) >= cutoff
        ]
        record.usage_history = kept[-USAGE_HISTORY_LIMIT:]

    # ── Outcomes ──────────────────────────────────────────────────────────────

    async def ban_key(self, key_id: str, reason: Optional[str] = None) -> KeyRecord:
        record = self._require(key_id)
        self._apply_ban(record, reason or MANUAL_BAN_REASON, self._now())
        await self._writer.write_now()
        LOG.warning("Banned key %s: %s", key_id, record.banned_reason)
        return record

    async def record_outcome(
        self,
        key_id: str,
        success: bool,
        *,
        tokens: int = 0,
        error: Optional[str] = None,
    ) -> KeyRecord:
        """Account one finished upstream request against a key."""
        record = self._require(key_id)
        record.total_requests += 1
        if success:
            record.success_requests += 1
            record.consecutive_errors = 0
        else:
            record.error_count += 1
            record.consecutive_errors += 1
            record.last_error = error
        record.success_rate = round(record.success_requests / record.total_requests, 4)
        if tokens > 0:
            self._record_tokens(record, tokens)
        self._scores.invalidate(key_id)

        policy = self._config.auto_ban
        if (
            not success
            and policy.enabled
            and record.status == KeyStatus.ACTIVE
            and record.consecutive_errors >= policy.error_threshold
        ):
            record.status = KeyStatus.DISABLED
            record.last_error = (
                f"disabled after {record.consecutive_errors} consecutive errors: {error}"
            )
            LOG.warning("Key %s %s", key_id, record.last_error)
            await self._writer.write_now()
            return record
        self._writer.schedule()
        return record

    def _record_tokens(self, record: KeyRecord, tokens: int) -> None:
        now = self._now()
        record.tokens_used += tokens
        history = record.usage_history
        if history:
            last = history[-1]
            last["tokens_used"] = int(last.get("tokens_used") or 0) + tokens
        else:
            history.append({"timestamp": now_iso(now), "tokens_used": tokens})
        self._prune_history(record, now)

    # ── Stats ─────────────────────────────────────────────────────────────────

    def _counts(self, records: Optional[Iterable[KeyRecord]] = None) -> dict[str, int]:
        counts = {"total": 0, "active": 0, "disabled": 0, "banned": 0}
        for record in self._keys.values() if records is None else records:
            counts["total"] += 1
            counts[record.status.value] += 1
        return counts

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = self._counts()
        stats["eligible"] = len(self._eligible())
        stats["untested"] = sum(
            1 for r in self._keys.values() if r.last_test_result == HealthResult.UNTESTED
        )
        stats["last_rotation_index"] = self._rotation_index
        stats["algorithm"] = self._config.algorithm
        return stats

    # ── Config ────────────────────────────────────────────────────────────────

    def get_config(self) -> dict[str, Any]:
        return self._config.to_dict()

    async def update_config(self, partial: Mapping[str, Any]) -> dict[str, Any]:
        patch = parse_patch(partial)
        updated = apply_patch(self._config, patch)
        if updated.algorithm != self._config.algorithm:
            LOG.info(
                "Selection algorithm %s -> %s", self._config.algorithm, updated.algorithm
            )
            self._scores.clear()
        self._config = updated
        await self._writer.write_now()
        return self.get_config()

    async def reset_config(self) -> dict[str, Any]:
        self._config = resolve_config(None, self._environ)
        self._scores.clear()
        await self._writer.write_now()
        LOG.info("Config reset to defaults")
        return self.get_config()

    # ── Pool groups ───────────────────────────────────────────────────────────

    def list_pool_groups(self) -> list[PoolGroup]:
        return sorted(self._groups.values(), key=lambda g: g.priority)

    def get_pool_group_stats(self) -> list[dict[str, Any]]:
        known = set(self._groups)
        out = []
        for group in self.list_pool_groups():
            members = [r for r in self._keys.values() if r.pool_group == group.id]
            entry = group.to_dict()
            entry.update(self._counts(members))
            entry["eligible"] = sum(1 for r in members if r.eligible)
            out.append(entry)
        members = [r for r in self._keys.values() if r.pool_group not in known]
        default = {
            "id": DEFAULT_GROUP_ID,
            "name": "Default",
            "priority": None,
            "description": "Keys without a pool group",
            "implicit": True,
        }
        default.update(self._counts(members))
        default["eligible"] = sum(1 for r in members if r.eligible)
        out.append(default)
        return out

    async def create_pool_group(
        self,
        group_id: str,
        name: str = "",
        priority: int = 50,
        description: str = "",
    ) -> PoolGroup:
        gid = validate_group_id(group_id)
        if gid == DEFAULT_GROUP_ID:
            raise ValidationError(f"'{DEFAULT_GROUP_ID}' is reserved for ungrouped keys")
        if gid in self._groups:
            raise ConflictError(f"pool group '{gid}' already exists")
        if not isinstance(priority, int) or not 1 <= priority <= 100:
            raise ValidationError("priority must be an integer between 1 and 100")
        if description and len(description) > 500:
            raise ValidationError("description is too long (max 500 characters)")
        group = PoolGroup(
            id=gid,
            name=(name or "").strip() or gid,
            priority=priority,
            description=description or "",
            created_at=now_iso(self._now()),
        )
        self._groups[gid] = group
        await self._writer.write_now()
        LOG.info("Created pool group %s (priority %d)", gid, priority)
        return group

    async def delete_pool_group(self, group_id: str) -> int:
        """Remove a group; its keys move to the default group."""
        self._require_group(group_id)
        affected = 0
        for record in self._keys.values():
            if record.pool_group == group_id:
                record.pool_group = DEFAULT_GROUP_ID
                affected += 1
        del self._groups[group_id]
        await self._writer.write_now()
        LOG.info("Deleted pool group %s, %d keys moved to default", group_id, affected)
        return affected

    # ── Health tests ──────────────────────────────────────────────────────────

    def _require_probe(self) -> HealthProbe:
        if self.probe is None:
            raise KeyPoolError("health probe is not configured", 500, "probe_unavailable")
        return self.probe

    def _apply_probe(self, record: KeyRecord, outcome: ProbeOutcome) -> None:
        now = self._now()
        record.last_test_at = now_iso(now)
        if outcome.success:
            record.last_test_result = HealthResult.SUCCESS
            record.consecutive_errors = 0
            record.last_error = None
            return
        record.last_test_result = HealthResult.FAILED
        record.error_count += 1
        record.last_error = str(outcome.detail or outcome.message)
        if outcome.new_status == KeyStatus.BANNED:
            self._apply_ban(record, outcome.message, now)
            LOG.warning("Key %s banned by health test: %s", record.id, outcome.message)
        elif outcome.new_status == KeyStatus.DISABLED and record.status == KeyStatus.ACTIVE:
            record.status = KeyStatus.DISABLED
            LOG.warning("Key %s disabled by health test: %s", record.id, record.last_error)
        self._scores.invalidate(record.id)

    async def _run_test(self, key_id: str) -> dict[str, Any]:
        probe = self._require_probe()
        record = self._require(key_id)
        config = self._config
        outcome = await probe.probe(
            record.key,
            config.retry,
            config.auto_ban,
            config.performance.request_timeout_ms / 1000,
        )
        record = self._keys.get(key_id)
        if record is None:
            raise NotFoundError(f"key '{key_id}' was deleted during the test")
        self._apply_probe(record, outcome)
        return {
            "id": key_id,
            "success": outcome.success,
            "status": outcome.status_code,
            "message": outcome.message,
            "key_status": record.status.value,
            "attempts": outcome.attempts,
        }

    async def test_key(self, key_id: str) -> dict[str, Any]:
        result = await self._run_test(key_id)
        await self._writer.write_now()
        return result

    async def test_all_keys(self) -> dict[str, int]:
        """Test every non-banned key in bounded concurrent batches."""
        self._require_probe()
        targets = [r.id for r in self._keys.values() if r.status != KeyStatus.BANNED]
        limit = max(1, min(self._config.performance.concurrent_limit, MAX_BATCH_CONCURRENCY))
        summary = {"total": len(targets), "tested": 0, "success": 0, "failed": 0, "banned": 0}
        for start in range(0, len(targets), limit):
            batch = targets[start:start + limit]
            results = await asyncio.gather(
                *(self._run_test(key_id) for key_id in batch), return_exceptions=True
            )
            for key_id, result in zip(batch, results):
                if isinstance(result, BaseException):
                    LOG.warning("Test of key %s did not complete: %s", key_id, result)
                    summary["failed"] += 1
                    continue
                summary["tested"] += 1
                if result["success"]:
                    summary["success"] += 1
                elif result["key_status"] == KeyStatus.BANNED.value:
                    summary["banned"] += 1
                else:
                    summary["failed"] += 1
            await self._writer.write_now()
            if start + limit < len(targets):
                await asyncio.sleep(self.batch_pause)
        LOG.info(
            "Tested %d keys: %d ok, %d failed, %d banned",
            summary["tested"], summary["success"], summary["failed"], summary["banned"],
        )
        return summary
