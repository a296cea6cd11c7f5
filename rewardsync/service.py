"""Service facade: the surface handlers and the web app talk to."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Mapping
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from rewardsync import rewards
from rewardsync.background import BackgroundQueue
from rewardsync.config import Settings, settings
from rewardsync.connection import ConnectionManager
from rewardsync.coordinator import OptimisticUpdateCoordinator
from rewardsync.db.session import MirrorStorage
from rewardsync.errors import MalformedWrite, NotEligible
from rewardsync.keys import resolve_key
from rewardsync.mirror import LocalMirrorCache
from rewardsync.models import ConnectionStatus, ReferralEdge, Tier, UserRecord, utcnow
from rewardsync.payments import PaymentEvent, process_payment
from rewardsync.referrals import confirm_referral, register_referral
from rewardsync.rewards import IdempotentRewardApplier, RewardFn, RewardResult
from rewardsync.sanitize import (
    RECORD_FIELDS,
    format_timestamp,
    prepare,
    record_from_wire,
    record_to_wire,
)
from rewardsync.store import MemoryRecordStore, RecordStore
from rewardsync.store_redis import RedisRecordStore
from rewardsync.subscriptions import Listener, SubscriptionManager, Unwatch

log = logging.getLogger("rewardsync.service")

Mutation = Callable[[UserRecord], UserRecord] | Mapping[str, Any]

# fields only the reward applier and the key resolver may touch
_PROTECTED_FIELDS = frozenset({"external_id", "applied_event_ids", "updated_at", "created_at"})
_PROFILE_FIELDS = ("username", "first_name")


def _mapping_mutator(fields: Mapping[str, Any]) -> Callable[[UserRecord], UserRecord]:
    unknown = sorted(name for name in fields if name not in RECORD_FIELDS)
    if unknown:
        raise MalformedWrite(f"unknown fields: {', '.join(unknown)}")
    protected = sorted(name for name in fields if name in _PROTECTED_FIELDS)
    if protected:
        raise MalformedWrite(f"fields cannot be set directly: {', '.join(protected)}")
    cleaned = prepare(fields, required=())

    def mutate(record: UserRecord) -> UserRecord:
        document = record_to_wire(record)
        for name, value in cleaned.items():
            if value is None:
                document.pop(name, None)
            else:
                document[name] = value
        try:
            return record_from_wire(document)
        except (TypeError, ValueError) as exc:
            raise MalformedWrite(f"invalid field value: {exc}", key=record.external_id) from exc

    return mutate


class RewardSyncService:
    """Wires store, mirror, subscriptions, coordinator and applier together."""

    def __init__(
        self,
        store: RecordStore,
        *,
        mirror: LocalMirrorCache | None = None,
        write_timeout: float = 12.0,
        conflict_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.2,
        debounce: float = 4.0,
        refresh_workers: int = 2,
        mirror_sync_interval: float = 5.0,
        warn_threshold: int | None = None,
    ) -> None:
        self.store = store
        self.connection: ConnectionManager = store.connection
        self.mirror = mirror or LocalMirrorCache()
        self.coordinator = OptimisticUpdateCoordinator(
            store,
            self.mirror,
            write_timeout=write_timeout,
            conflict_attempts=conflict_attempts,
        )
        self.applier = IdempotentRewardApplier(self.coordinator, warn_threshold=warn_threshold)
        self.subscriptions = SubscriptionManager(
            store,
            self.mirror,
            self.connection,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
            debounce=debounce,
        )
        self.background = BackgroundQueue(workers=refresh_workers)
        self._mirror_sync_interval = mirror_sync_interval
        self._mirror_sync_task: Optional[asyncio.Task[None]] = None
        self._started = False

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> "RewardSyncService":
        if cfg.STORE_BACKEND == "redis":
            connection = ConnectionManager(
                redis_url=cfg.REDIS_URL,
                check_interval=cfg.CONNECTIVITY_CHECK_INTERVAL,
            )
            store: RecordStore = RedisRecordStore(connection, prefix=cfg.REDIS_KEY_PREFIX)
        else:
            store = MemoryRecordStore(ConnectionManager())
        storage = MirrorStorage(cfg.MIRROR_DB_URL) if cfg.MIRROR_DB_URL else None
        mirror = LocalMirrorCache(storage, stale_after=cfg.MIRROR_STALE_AFTER_SECONDS)
        return cls(
            store,
            mirror=mirror,
            write_timeout=cfg.WRITE_TIMEOUT_SECONDS,
            conflict_attempts=cfg.WRITE_CONFLICT_ATTEMPTS,
            base_delay=cfg.RECONNECT_BASE_DELAY,
            max_delay=cfg.RECONNECT_MAX_DELAY,
            jitter=cfg.RECONNECT_JITTER,
            debounce=cfg.BACKGROUND_DEBOUNCE_SECONDS,
            refresh_workers=cfg.MIRROR_REFRESH_WORKERS,
            mirror_sync_interval=cfg.MIRROR_SYNC_INTERVAL_SECONDS,
            warn_threshold=cfg.APPLIED_EVENTS_WARN_THRESHOLD,
        )

    @property
    def started(self) -> bool:
        return self._started

    async def init(self) -> None:
        if self._started:
            return
        self._started = True
        await self.connection.init()
        storage = self.mirror.storage
        if storage is not None:
            await storage.init()
        stale = await self.mirror.load()
        await self.background.start()
        self.background.schedule_refresh(stale, self.coordinator.refresh)
        if storage is not None and self._mirror_sync_interval > 0:
            self._mirror_sync_task = asyncio.create_task(self._mirror_sync_loop(), name="rewardsync-mirror-sync")
        log.info("reward sync service started online=%s", self.connection.online)

    async def teardown(self) -> None:
        if not self._started:
            return
        self._started = False
        if self._mirror_sync_task is not None:
            self._mirror_sync_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._mirror_sync_task
            self._mirror_sync_task = None
        await self.subscriptions.close()
        await self.background.stop()
        await self.connection.teardown()
        storage = self.mirror.storage
        if storage is not None:
            await storage.dispose()
        log.info("reward sync service stopped")

    async def sync_mirror(self) -> list[str]:
        """Adopt mirror entries other processes persisted; return the changed keys."""

        try:
            changed = await self.mirror.sync_from_storage()
        except SQLAlchemyError:
            log.exception("mirror sync from durable storage failed")
            return []
        if changed:
            log.info("adopted %s mirror entries written elsewhere", len(changed))
        return changed

    async def _mirror_sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self._mirror_sync_interval)
            await self.sync_mirror()

    async def __aenter__(self) -> "RewardSyncService":
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.teardown()

    # -- core surface -------------------------------------------------

    async def watch_user(self, external_id: object, listener: Listener) -> Unwatch:
        return await self.subscriptions.watch(resolve_key(external_id), listener)

    async def update_user(self, external_id: object, mutation: Mutation) -> UserRecord:
        """Apply a mutator callable, or a mapping of field values, to one user."""

        key = resolve_key(external_id)
        if isinstance(mutation, Mapping):
            mutator = _mapping_mutator(mutation)
        elif callable(mutation):
            mutator = mutation
        else:
            raise MalformedWrite("mutation must be a callable or a mapping", key=key)
        return await self.coordinator.update(key, mutator)

    async def apply_reward(self, external_id: object, event_id: str, reward_fn: RewardFn) -> RewardResult:
        return await self.applier.apply_reward(resolve_key(external_id), event_id, reward_fn)

    def get_connection_status(self) -> ConnectionStatus:
        return self.store.connectivity()

    def sync_status(self) -> dict[str, Any]:
        status = self.get_connection_status()
        return {
            "online": status.online,
            "last_change": status.last_change,
            "last_sync_time": status.last_sync_time,
            "mirror_entries": len(self.mirror.keys()),
            "started": self._started,
        }

    # -- economy --------------------------------------------------------

    async def ensure_user(
        self,
        external_id: object,
        *,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
    ) -> UserRecord:
        """Create the user on first contact and keep the profile fields current."""

        key = resolve_key(external_id)
        profile = {"username": username, "first_name": first_name}
        record = await self.coordinator.ensure(key, **profile)
        changed = {
            name: value
            for name, value in profile.items()
            if value and value.strip() and getattr(record, name) != value.strip()
        }
        if changed:
            record = await self.coordinator.update(key, _mapping_mutator(changed))
        return record

    async def claim_task(self, external_id: object, task_id: str, reward: int) -> RewardResult:
        if not task_id:
            raise MalformedWrite("task id must not be empty")
        return await self.apply_reward(external_id, f"task:{task_id}", rewards.task_claim(reward))

    async def start_farming(self, external_id: object) -> UserRecord:
        return await self.coordinator.update(resolve_key(external_id), rewards.start_farming())

    async def claim_farming(self, external_id: object) -> RewardResult:
        key = resolve_key(external_id)
        record = await self.coordinator.current(key)
        if record.farming_window_start is None:
            raise NotEligible("no farming session to claim", key=key)
        event_id = f"farming:{format_timestamp(record.farming_window_start)}"
        return await self.applier.apply_reward(key, event_id, rewards.farming_claim())

    async def claim_daily(self, external_id: object) -> RewardResult:
        now = utcnow()
        return await self.apply_reward(
            external_id,
            f"daily:{now.date().isoformat()}",
            rewards.daily_claim(now),
        )

    async def activate_tier(self, external_id: object, tier: Tier | str, *, payment_id: str) -> RewardResult:
        if not payment_id:
            raise MalformedWrite("payment id must not be empty")
        return await self.apply_reward(external_id, f"payment:{payment_id}", rewards.tier_activation(tier))

    async def credit_payment(self, event: PaymentEvent | Mapping[str, Any]) -> Optional[RewardResult]:
        if not isinstance(event, PaymentEvent):
            event = PaymentEvent.from_webhook(dict(event))
        return await process_payment(self.applier, event)

    async def request_withdrawal(
        self,
        external_id: object,
        amount: int,
        *,
        request_id: str | None = None,
    ) -> RewardResult:
        request_id = request_id or uuid.uuid4().hex
        return await self.apply_reward(external_id, f"withdrawal:{request_id}", rewards.withdrawal(amount))

    async def register_referral(self, referred_id: object, referrer_id: object) -> ReferralEdge:
        return await register_referral(self.coordinator, referred_id, referrer_id)

    async def confirm_referral(self, referred_id: object) -> Optional[RewardResult]:
        return await confirm_referral(self.coordinator, self.applier, referred_id)

    # -- host visibility --------------------------------------------------

    def notify_hidden(self) -> None:
        self.subscriptions.notify_hidden()

    async def notify_visible(self) -> bool:
        return await self.subscriptions.notify_visible()


__all__ = ["Mutation", "RewardSyncService"]
