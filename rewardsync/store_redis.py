import asyncio
import contextlib
import json
import logging
from typing import Any, Dict, Iterator, Optional

from redis.asyncio.client import PubSub
from redis.exceptions import AuthenticationError, NoPermissionError, ResponseError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from rewardsync.connection import ConnectionManager
from rewardsync.errors import Conflict, Denied, NotFound, Unavailable
from rewardsync.store import (
    ChangeCallback,
    ErrorCallback,
    RecordStore,
    StoreSnapshot,
    Unsubscribe,
    invoke_callback,
)

log = logging.getLogger("rewardsync.store.redis")

REVISION_FIELD = "_rev"

# KEYS[1] = record hash; ARGV = field, value, field, value, ...
_CREATE_LUA = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {0, redis.call('HGETALL', KEYS[1])}
end
redis.call('HSET', KEYS[1], unpack(ARGV))
redis.call('HINCRBY', KEYS[1], '_rev', 1)
return {1, redis.call('HGETALL', KEYS[1])}
"""

# KEYS[1] = record hash; ARGV[1] = expected revision or "" for none,
# ARGV[2] = number of pairs to set, then the pairs, then the field names to
# delete. Returns {0, revision} when the expected revision does not match.
_PATCH_LUA = """
if redis.call('EXISTS', KEYS[1]) == 0 then
  return false
end
local current = tonumber(redis.call('HGET', KEYS[1], '_rev') or '0')
if ARGV[1] ~= '' and tonumber(ARGV[1]) ~= current then
  return {0, current}
end
local n = tonumber(ARGV[2])
if n > 0 then
  redis.call('HSET', KEYS[1], unpack(ARGV, 3, 2 + n * 2))
end
for i = 3 + n * 2, #ARGV do
  redis.call('HDEL', KEYS[1], ARGV[i])
end
redis.call('HINCRBY', KEYS[1], '_rev', 1)
return {1, redis.call('HGETALL', KEYS[1])}
"""


def _encode_fields(document: Dict[str, Any]) -> list[str]:
    flat: list[str] = []
    for name, value in document.items():
        flat.append(name)
        flat.append(json.dumps(value, ensure_ascii=False, separators=(",", ":")))
    return flat


def _decode_hash(raw: Any) -> tuple[Dict[str, Any], int]:
    if isinstance(raw, dict):
        items = list(raw.items())
    else:
        values = list(raw or [])
        items = list(zip(values[0::2], values[1::2]))
    document: Dict[str, Any] = {}
    revision = 0
    for name, value in items:
        if name == REVISION_FIELD:
            revision = int(value)
            continue
        document[name] = json.loads(value)
    return document, revision


class RedisRecordStore(RecordStore):
    """Record store backed by one Redis hash per record plus Pub/Sub pushes."""

    def __init__(self, connection: ConnectionManager, *, prefix: str = "rs") -> None:
        super().__init__(connection)
        self._prefix = prefix
        self._create_script = None
        self._patch_script = None

    def _redis_key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def _channel(self, key: str) -> str:
        return f"{self._prefix}:changes:{key}"

    def _scripts(self):
        if self._create_script is None:
            client = self.connection.client
            self._create_script = client.register_script(_CREATE_LUA)
            self._patch_script = client.register_script(_PATCH_LUA)
        return self._create_script, self._patch_script

    @contextlib.contextmanager
    def _translate(self, key: str) -> Iterator[None]:
        try:
            yield
        except (AuthenticationError, NoPermissionError) as exc:
            raise Denied(str(exc), key=key) from exc
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            self.connection.mark_offline(str(exc))
            raise Unavailable(str(exc), key=key) from exc
        except ResponseError as exc:
            raise Denied(str(exc), key=key) from exc
        else:
            self.connection.mark_online()

    async def _publish(self, snapshot: StoreSnapshot) -> None:
        message = json.dumps(
            {"revision": snapshot.revision, "document": snapshot.document},
            ensure_ascii=False,
            separators=(",", ":"),
        )
        try:
            with self._translate(snapshot.key):
                await self.connection.client.publish(self._channel(snapshot.key), message)
        except (Unavailable, Denied) as exc:
            # the write itself landed; subscribers resync on reconnect
            log.warning("change notification for %s not published: %s", snapshot.key, exc)

    async def read(self, key: str) -> StoreSnapshot:
        with self._translate(key):
            raw = await self.connection.client.hgetall(self._redis_key(key))
        if not raw:
            raise NotFound("record does not exist", key=key)
        document, revision = _decode_hash(raw)
        self.connection.mark_synced()
        return StoreSnapshot(key, document, revision)

    async def write(self, key: str, document: Dict[str, Any]) -> StoreSnapshot:
        create, _ = self._scripts()
        with self._translate(key):
            created, raw = await create(keys=[self._redis_key(key)], args=_encode_fields(document))
        stored, revision = _decode_hash(raw)
        snapshot = StoreSnapshot(key, stored, revision)
        if int(created):
            log.info("created record %s", key)
            await self._publish(snapshot)
        self.connection.mark_synced()
        return snapshot

    async def patch(
        self,
        key: str,
        partial: Dict[str, Any],
        *,
        expected_revision: Optional[int] = None,
    ) -> StoreSnapshot:
        _, patch = self._scripts()
        to_set = {name: value for name, value in partial.items() if value is not None}
        to_delete = [name for name, value in partial.items() if value is None]
        expected = "" if expected_revision is None else str(expected_revision)
        args: list[Any] = [expected, len(to_set), *_encode_fields(to_set), *to_delete]
        with self._translate(key):
            raw = await patch(keys=[self._redis_key(key)], args=args)
        if raw is None:
            raise NotFound("cannot patch a missing record", key=key)
        applied, payload = raw
        if not int(applied):
            raise Conflict(f"revision is {payload}, expected {expected_revision}", key=key)
        document, revision = _decode_hash(payload)
        snapshot = StoreSnapshot(key, document, revision)
        await self._publish(snapshot)
        self.connection.mark_synced()
        return snapshot

    async def subscribe(
        self,
        key: str,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        channel = self._channel(key)
        pubsub = self.connection.client.pubsub()
        with self._translate(key):
            await pubsub.subscribe(channel)
        task = asyncio.create_task(
            self._listen(key, pubsub, on_change, on_error),
            name=f"rewardsync-sub:{key}",
        )

        async def _unsubscribe() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            with contextlib.suppress(RedisConnectionError, RedisTimeoutError, OSError):
                await pubsub.unsubscribe(channel)
            await pubsub.aclose()

        return _unsubscribe

    async def _listen(
        self,
        key: str,
        pubsub: PubSub,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback],
    ) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    payload = json.loads(message["data"])
                    snapshot = StoreSnapshot(key, dict(payload["document"]), int(payload["revision"]))
                except (KeyError, TypeError, ValueError):
                    log.warning("dropping malformed change message on %s", key)
                    continue
                await invoke_callback(on_change, snapshot)
        except (RedisConnectionError, RedisTimeoutError, OSError) as exc:
            self.connection.mark_offline(str(exc))
            if on_error is not None:
                await invoke_callback(on_error, Unavailable(str(exc), key=key))


__all__ = ["REVISION_FIELD", "RedisRecordStore"]
