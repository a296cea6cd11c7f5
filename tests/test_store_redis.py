import asyncio
import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoPermissionError

from rewardsync.connection import ConnectionManager
from rewardsync.errors import Conflict, Denied, NotFound, Unavailable
from rewardsync.store_redis import REVISION_FIELD, RedisRecordStore


class FakeScript:
    def __init__(self, client: "FakeRedis", source: str) -> None:
        self.client = client
        self.creates = "EXISTS', KEYS[1]) == 1" in source

    async def __call__(self, keys=(), args=()):
        self.client.check()
        if self.creates:
            return self.client.create(keys[0], list(args))
        return self.client.patch(keys[0], list(args))


class FakePubSub:
    def __init__(self, client: "FakeRedis") -> None:
        self.client = client
        self.queue: asyncio.Queue = asyncio.Queue()
        self.channels: set[str] = set()
        self.closed = False

    async def subscribe(self, channel: str) -> None:
        self.client.check()
        self.channels.add(channel)
        self.client.pubsubs.append(self)

    async def unsubscribe(self, channel: str) -> None:
        self.channels.discard(channel)

    async def aclose(self) -> None:
        self.closed = True
        if self in self.client.pubsubs:
            self.client.pubsubs.remove(self)

    async def listen(self):
        yield {"type": "subscribe", "data": 1}
        while True:
            item = await self.queue.get()
            if isinstance(item, Exception):
                raise item
            yield item


class FakeRedis:
    """In-memory double for the handful of redis.asyncio calls the store makes."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.published: list[tuple[str, dict]] = []
        self.pubsubs: list[FakePubSub] = []
        self.error: Exception | None = None
        self.publish_error: Exception | None = None

    def check(self) -> None:
        if self.error is not None:
            raise self.error

    @staticmethod
    def _flat(data: dict[str, str]) -> list[str]:
        flat: list[str] = []
        for name, value in data.items():
            flat.extend([name, value])
        return flat

    def create(self, key: str, args: list) -> list:
        if key in self.hashes:
            return [0, self._flat(self.hashes[key])]
        data = dict(zip(args[0::2], args[1::2]))
        data[REVISION_FIELD] = "1"
        self.hashes[key] = data
        return [1, self._flat(data)]

    def patch(self, key: str, args: list):
        if key not in self.hashes:
            return None
        data = self.hashes[key]
        expected, count = args[0], int(args[1])
        if expected != "" and int(expected) != int(data[REVISION_FIELD]):
            return [0, int(data[REVISION_FIELD])]
        pairs = args[2 : 2 + count * 2]
        data.update(zip(pairs[0::2], pairs[1::2]))
        for name in args[2 + count * 2 :]:
            data.pop(name, None)
        data[REVISION_FIELD] = str(int(data[REVISION_FIELD]) + 1)
        return [1, self._flat(data)]

    def register_script(self, source: str) -> FakeScript:
        return FakeScript(self, source)

    async def hgetall(self, key: str) -> dict[str, str]:
        self.check()
        return dict(self.hashes.get(key, {}))

    async def publish(self, channel: str, message: str) -> int:
        if self.publish_error is not None:
            raise self.publish_error
        payload = json.loads(message)
        self.published.append((channel, payload))
        for pubsub in list(self.pubsubs):
            if channel in pubsub.channels:
                pubsub.queue.put_nowait({"type": "message", "channel": channel, "data": message})
        return 1

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)

    async def ping(self) -> bool:
        self.check()
        return True

    async def aclose(self) -> None:
        return None


KEY = "telegram_users/123456"


def _store() -> tuple[RedisRecordStore, FakeRedis, ConnectionManager]:
    client = FakeRedis()
    connection = ConnectionManager(client=client)
    return RedisRecordStore(connection, prefix="test"), client, connection


@pytest.mark.asyncio
async def test_write_creates_once_and_publishes() -> None:
    store, client, _ = _store()

    created = await store.write(KEY, {"external_id": "123456", "balance": 10, "tags": ["a"]})
    again = await store.write(KEY, {"external_id": "123456", "balance": 99})

    assert created.revision == 1
    assert created.document == {"external_id": "123456", "balance": 10, "tags": ["a"]}
    assert again.document["balance"] == 10
    assert client.hashes[f"test:{KEY}"]["balance"] == "10"
    assert [channel for channel, _ in client.published] == [f"test:changes:{KEY}"]


@pytest.mark.asyncio
async def test_patch_sets_deletes_and_bumps_revision() -> None:
    store, client, _ = _store()
    await store.write(KEY, {"external_id": "123456", "balance": 10, "username": "alice"})

    snapshot = await store.patch(KEY, {"balance": 25, "username": None})

    assert snapshot.revision == 2
    assert snapshot.document == {"external_id": "123456", "balance": 25}
    channel, payload = client.published[-1]
    assert payload == {"revision": 2, "document": {"external_id": "123456", "balance": 25}}

    read = await store.read(KEY)
    assert read.revision == 2
    assert read.document == snapshot.document


@pytest.mark.asyncio
async def test_missing_record_raises_not_found() -> None:
    store, _, _ = _store()
    with pytest.raises(NotFound):
        await store.read(KEY)
    with pytest.raises(NotFound):
        await store.patch(KEY, {"balance": 1})


@pytest.mark.asyncio
async def test_connection_errors_map_to_unavailable_and_toggle_online() -> None:
    store, client, connection = _store()
    await store.write(KEY, {"external_id": "123456"})

    client.error = RedisConnectionError("connection refused")
    with pytest.raises(Unavailable):
        await store.read(KEY)
    assert connection.online is False

    client.error = None
    await store.read(KEY)
    assert connection.online is True


@pytest.mark.asyncio
async def test_permission_errors_map_to_denied() -> None:
    store, client, connection = _store()
    client.error = NoPermissionError("NOPERM this user has no permissions")
    with pytest.raises(Denied):
        await store.write(KEY, {"external_id": "123456"})
    assert connection.online is True


@pytest.mark.asyncio
async def test_publish_failure_does_not_fail_the_write() -> None:
    store, client, _ = _store()
    await store.write(KEY, {"external_id": "123456", "balance": 1})
    client.publish_error = RedisConnectionError("pubsub down")

    snapshot = await store.patch(KEY, {"balance": 2})

    assert snapshot.document["balance"] == 2


@pytest.mark.asyncio
async def test_subscription_delivers_changes_and_reports_errors() -> None:
    store, client, connection = _store()
    await store.write(KEY, {"external_id": "123456", "balance": 1})
    changes, errors = [], []

    async def on_change(snapshot) -> None:
        changes.append(snapshot)

    unsubscribe = await store.subscribe(KEY, on_change, errors.append)
    await store.patch(KEY, {"balance": 2})
    for _ in range(5):
        await asyncio.sleep(0)

    assert [(snap.revision, snap.document["balance"]) for snap in changes] == [(2, 2)]

    pubsub = client.pubsubs[0]
    pubsub.queue.put_nowait(RedisConnectionError("socket closed"))
    for _ in range(5):
        await asyncio.sleep(0)

    assert len(errors) == 1 and isinstance(errors[0], Unavailable)
    assert connection.online is False

    await unsubscribe()
    assert pubsub.closed is True


@pytest.mark.asyncio
async def test_patch_with_stale_revision_is_rejected() -> None:
    store, client, _ = _store()
    await store.write(KEY, {"external_id": "123456", "balance": 10})
    await store.patch(KEY, {"balance": 20}, expected_revision=1)

    with pytest.raises(Conflict):
        await store.patch(KEY, {"balance": 99}, expected_revision=1)

    assert client.hashes[f"test:{KEY}"]["balance"] == "20"
    assert (await store.read(KEY)).revision == 2
