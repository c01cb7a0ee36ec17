"""Tests for the storage gateway and its serialized mutation queue."""

import asyncio
import json
import time

import pytest

from tabsnooze.errors import BackendError, FutureSchemaError
from tabsnooze.scheduler.restore import collect_due
from tabsnooze.storage.backend import MemoryBackend, SessionStore
from tabsnooze.storage.backup import BACKUP_PREFIX
from tabsnooze.storage.gateway import (
    LEGACY_BACKUP_KEY,
    LEGACY_KEY,
    PENDING_RECOVERY_KEY,
    PRIMARY_KEY,
    WARNING_THRESHOLD,
    StorageGateway,
    TabInput,
)
from tabsnooze.storage.validation import validate_container
from tabsnooze.surfaces.base import SurfaceEntry, SurfaceHandle


class SlowBackend(MemoryBackend):
    """Yields to the event loop on every call so concurrent mutations interleave."""

    async def get(self, keys=None):
        await asyncio.sleep(0)
        return await super().get(keys)

    async def set(self, values):
        await asyncio.sleep(0)
        await super().set(values)


class SizedBackend(MemoryBackend):
    def __init__(self, size: int, initial=None):
        super().__init__(initial)
        self.size = size

    async def get_bytes_in_use(self, keys=None):
        return self.size


class FailingSetBackend(MemoryBackend):
    async def set(self, values):
        raise BackendError("disk full")


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def create(self, notification_id, notification):
        self.sent.append((notification_id, notification))


def item(item_id: str, pop_time: int = 1000, **extra) -> dict:
    return {"id": item_id, "url": f"https://e.example/{item_id}", "creationTime": 1, "popTime": pop_time, **extra}


def store_of(*items: dict) -> dict:
    schedule: dict = {}
    for i in items:
        schedule.setdefault(str(i["popTime"]), []).append(i["id"])
    return {"version": 2, "items": {i["id"]: i for i in items}, "schedule": schedule}


def assert_round_trip(container: dict) -> None:
    assert validate_container(container).valid
    for item_id, entry in container["items"].items():
        assert item_id in container["schedule"][str(entry["popTime"])]


@pytest.fixture
def backend() -> SlowBackend:
    return SlowBackend()


@pytest.fixture
def gateway(backend: SlowBackend) -> StorageGateway:
    return StorageGateway(backend, session=SessionStore(MemoryBackend()), backup_debounce=60)


class TestRead:
    @pytest.mark.asyncio
    async def test_missing(self, gateway: StorageGateway):
        assert await gateway.read() == {"version": 2, "items": {}, "schedule": {}}

    @pytest.mark.asyncio
    async def test_coerces_wrong_types(self, backend, gateway: StorageGateway):
        await backend.set({PRIMARY_KEY: {"items": [], "schedule": "x"}})
        assert await gateway.read() == {"version": 2, "items": {}, "schedule": {}}

    @pytest.mark.asyncio
    async def test_keeps_version(self, backend, gateway: StorageGateway):
        await backend.set({PRIMARY_KEY: {"version": 2, "items": {}, "schedule": {}}})
        assert (await gateway.read())["version"] == 2

    @pytest.mark.asyncio
    async def test_backend_failure_propagates(self):
        class Broken(MemoryBackend):
            async def get(self, keys=None):
                raise BackendError("unreadable")

        with pytest.raises(BackendError):
            await StorageGateway(Broken()).read()


class TestWrite:
    @pytest.mark.asyncio
    async def test_arms_backup(self, backend, gateway: StorageGateway):
        await gateway.write(store_of(item("a")))
        assert gateway.backups.pending
        await gateway.close()
        keys = [k for k in await backend.get(None) if k.startswith(BACKUP_PREFIX)]
        assert len(keys) == 1


class TestSnooze:
    @pytest.mark.asyncio
    async def test_adds_item_and_bucket(self, gateway: StorageGateway):
        item_id = await gateway.snooze(TabInput(url="https://a.example", title="A", index=3), 5000, "g1")
        container = await gateway.read()
        entry = container["items"][item_id]
        assert entry["url"] == "https://a.example"
        assert entry["title"] == "A"
        assert entry["popTime"] == 5000
        assert entry["groupId"] == "g1"
        assert entry["index"] == 3
        assert container["schedule"]["5000"] == [item_id]
        assert_round_trip(container)
        gateway.backups.cancel()

    @pytest.mark.asyncio
    async def test_restricted_url_skipped(self, gateway: StorageGateway):
        assert await gateway.snooze(TabInput(url="chrome://settings"), 5000) is None
        assert (await gateway.read())["items"] == {}

    @pytest.mark.asyncio
    async def test_backend_failure_propagates(self):
        gateway = StorageGateway(FailingSetBackend())
        with pytest.raises(BackendError):
            await gateway.snooze(TabInput(url="https://a.example"), 5000)


class TestMutate:
    @pytest.mark.asyncio
    async def test_failure_does_not_poison_queue(self, gateway: StorageGateway):
        def explode(container):
            raise RuntimeError("bad step")

        failing = asyncio.ensure_future(gateway.mutate(explode, "explode"))
        following = asyncio.ensure_future(gateway.snooze(TabInput(url="https://a.example"), 1000))
        with pytest.raises(RuntimeError):
            await failing
        assert await following is not None
        assert len((await gateway.read())["items"]) == 1
        gateway.backups.cancel()

    @pytest.mark.asyncio
    async def test_no_lost_updates(self, backend, gateway: StorageGateway):
        await backend.set({PRIMARY_KEY: store_of(item("x"), item("y", 2000))})

        snoozes = [
            gateway.snooze(TabInput(url=f"https://e.example/{n}"), 3000 + n) for n in range(10)
        ]
        imports = [
            gateway.import_items(store_of(item("x"), item("z"))),
            gateway.import_items({"tabCount": 1, "4000": [{"url": "https://legacy.example"}]}),
        ]
        removals = [gateway.remove_item("y"), gateway.remove_item("missing")]
        await asyncio.gather(*snoozes, *imports, *removals)

        container = await gateway.read()
        # 2 seeded - 1 removed + 10 snoozed + 2 imported (x reassigned) + 1 legacy
        assert len(container["items"]) == 14
        assert "y" not in container["items"]
        assert_round_trip(container)
        gateway.backups.cancel()


class TestRemove:
    @pytest.mark.asyncio
    async def test_remove_item_prunes_bucket(self, backend, gateway: StorageGateway):
        await backend.set({PRIMARY_KEY: store_of(item("a"), item("b"), item("c", 2000))})
        assert await gateway.remove_item("a")
        assert await gateway.remove_item("c")
        container = await gateway.read()
        assert container["schedule"] == {"1000": ["b"]}
        assert not await gateway.remove_item("a")
        gateway.backups.cancel()

    @pytest.mark.asyncio
    async def test_remove_group(self, backend, gateway: StorageGateway):
        await backend.set({PRIMARY_KEY: store_of(
            item("a", groupId="g"), item("b", 2000, groupId="g"), item("c", groupId="h"), item("d"),
        )})
        assert await gateway.remove_group("g") == 2
        container = await gateway.read()
        assert sorted(container["items"]) == ["c", "d"]
        assert container["schedule"] == {"1000": ["c", "d"]}
        gateway.backups.cancel()

    @pytest.mark.asyncio
    async def test_remove_restored(self, backend, gateway: StorageGateway):
        await backend.set({PRIMARY_KEY: store_of(item("a"), item("b"))})
        assert await gateway.remove_restored(["a", "ghost"]) == 1
        assert list((await gateway.read())["items"]) == ["b"]
        gateway.backups.cancel()

    @pytest.mark.asyncio
    async def test_reschedule(self, backend, gateway: StorageGateway):
        await backend.set({PRIMARY_KEY: store_of(item("a"), item("b"), item("c", 2000))})
        assert await gateway.reschedule(["a", "c", "ghost"], 9000) == 2
        container = await gateway.read()
        assert container["schedule"] == {"1000": ["b"], "9000": ["a", "c"]}
        assert container["items"]["a"]["popTime"] == 9000
        assert_round_trip(container)
        gateway.backups.cancel()


class TestImport:
    @pytest.mark.asyncio
    async def test_rejects_non_dict(self, gateway: StorageGateway):
        result = await gateway.import_items([1, 2])
        assert not result.success
        assert result.error == "Invalid data structure"

    @pytest.mark.asyncio
    async def test_unrecognized_is_empty_success(self, gateway: StorageGateway):
        result = await gateway.import_items({"hello": "world"})
        assert result.success
        assert result.added_count == 0

    @pytest.mark.asyncio
    async def test_rejects_future_version(self, gateway: StorageGateway):
        result = await gateway.import_items({"version": 3, "items": {}, "schedule": {}})
        assert not result.success
        assert "future schema version 3" in result.error

    @pytest.mark.asyncio
    async def test_non_finite_version_does_not_crash(self, gateway: StorageGateway):
        payload = json.loads('{"version": NaN, "items": {"a": {"id": "a", "url": "https://e.example/a", "creationTime": 1, "popTime": 1000}}, "schedule": {"1000": ["a"]}}')
        result = await gateway.import_items(payload)
        assert result.success
        assert result.added_count == 1
        gateway.backups.cancel()

    @pytest.mark.asyncio
    async def test_legacy_restricted_url_dropped(self, gateway: StorageGateway):
        payload = {
            "tabCount": 2,
            "1000": [
                {"url": "chrome://extensions", "title": "restricted"},
                {"url": "https://ok.example", "title": "fine"},
            ],
        }
        result = await gateway.import_items(payload)
        assert result.success
        assert result.added_count == 1
        container = await gateway.read()
        assert [i["url"] for i in container["items"].values()] == ["https://ok.example"]
        assert_round_trip(container)
        gateway.backups.cancel()

    @pytest.mark.asyncio
    async def test_sanitizes_invalid_payload(self, gateway: StorageGateway):
        payload = store_of(item("a"))
        payload["items"]["bad"] = {"id": "bad"}
        payload["schedule"]["1000"].append("ghost")
        result = await gateway.import_items(payload)
        assert result.added_count == 1
        assert list((await gateway.read())["items"]) == ["a"]
        gateway.backups.cancel()

    @pytest.mark.asyncio
    async def test_collision_reassigns_id(self, backend, gateway: StorageGateway):
        await backend.set({PRIMARY_KEY: store_of(item("a"))})
        result = await gateway.import_items(store_of(item("a", 2000)))
        assert result.added_count == 1
        container = await gateway.read()
        assert len(container["items"]) == 2
        new_id = next(i for i in container["items"] if i != "a")
        assert container["items"][new_id]["id"] == new_id
        assert container["schedule"]["2000"] == [new_id]
        assert_round_trip(container)
        gateway.backups.cancel()


class TestReplaceAll:
    @pytest.mark.asyncio
    async def test_migrates_legacy(self, backend, gateway: StorageGateway):
        await gateway.replace_all({"tabCount": 1, "1000": [{"url": "https://a.example"}]})
        container = (await backend.get(PRIMARY_KEY))[PRIMARY_KEY]
        assert container["version"] == 2
        assert len(container["items"]) == 1

    @pytest.mark.asyncio
    async def test_unknown_becomes_empty(self, backend, gateway: StorageGateway):
        await gateway.replace_all(None)
        assert (await backend.get(PRIMARY_KEY))[PRIMARY_KEY] == {"version": 2, "items": {}, "schedule": {}}

    @pytest.mark.asyncio
    async def test_future_version_rejected(self, gateway: StorageGateway):
        with pytest.raises(FutureSchemaError):
            await gateway.replace_all({"version": 9})


class TestGetValidated:
    @pytest.mark.asyncio
    async def test_sanitizes_and_persists(self, backend, gateway: StorageGateway):
        broken = store_of(item("a"))
        broken["schedule"]["1000"].append("ghost")
        await backend.set({PRIMARY_KEY: broken})
        container = await gateway.get_validated()
        assert container["schedule"] == {"1000": ["a"]}
        assert (await backend.get(PRIMARY_KEY))[PRIMARY_KEY]["schedule"] == {"1000": ["a"]}
        gateway.backups.cancel()

    @pytest.mark.asyncio
    async def test_list_items_sorted(self, backend, gateway: StorageGateway):
        await backend.set({PRIMARY_KEY: store_of(item("late", 9000), item("early", 10))})
        assert [i["id"] for i in await gateway.list_items()] == ["early", "late"]


class TestInitStorage:
    @pytest.mark.asyncio
    async def test_fresh(self, backend, gateway: StorageGateway):
        container = await gateway.init_storage()
        assert container == {"version": 2, "items": {}, "schedule": {}}
        assert (await backend.get(PRIMARY_KEY))[PRIMARY_KEY] == container

    @pytest.mark.asyncio
    async def test_legacy_key_migrated_and_retired(self, backend, gateway: StorageGateway):
        legacy = {"tabCount": 1, "1000": [{"url": "https://a.example"}]}
        await backend.set({LEGACY_KEY: legacy})
        container = await gateway.init_storage()
        assert len(container["items"]) == 1
        stored = await backend.get(None)
        assert LEGACY_KEY not in stored
        assert stored[LEGACY_BACKUP_KEY] == legacy

    @pytest.mark.asyncio
    async def test_corrupt_primary_recovers_from_backup(self, backend):
        notifier = RecordingNotifier()
        session = SessionStore(MemoryBackend())
        gateway = StorageGateway(backend, session=session, notifier=notifier, backup_debounce=60)
        await backend.set({
            PRIMARY_KEY: {"items": {"a": {"id": "zzz"}}, "schedule": {}},
            f"{BACKUP_PREFIX}100": store_of(item("b"), item("c")),
        })
        container = await gateway.init_storage()
        assert sorted(container["items"]) == ["b", "c"]
        assert await session.get(PENDING_RECOVERY_KEY) == {PENDING_RECOVERY_KEY: 2}
        assert [n[0] for n in notifier.sent] == ["storage-recovery"]

    @pytest.mark.asyncio
    async def test_empty_primary_recovers_from_backup(self, backend):
        notifier = RecordingNotifier()
        session = SessionStore(MemoryBackend())
        gateway = StorageGateway(backend, session=session, notifier=notifier, backup_debounce=60)
        await backend.set({PRIMARY_KEY: {}, f"{BACKUP_PREFIX}100": store_of(item("b"))})
        container = await gateway.init_storage()
        assert list(container["items"]) == ["b"]
        assert (await backend.get(PRIMARY_KEY))[PRIMARY_KEY]["items"] == {"b": item("b")}
        assert await session.get(PENDING_RECOVERY_KEY) == {PENDING_RECOVERY_KEY: 1}
        assert [n[0] for n in notifier.sent] == ["storage-recovery"]

    @pytest.mark.asyncio
    async def test_legacy_float_pop_time_is_restorable(self, backend, gateway: StorageGateway):
        await backend.set({LEGACY_KEY: {"1000": [{"url": "https://a.example", "popTime": 1000.0}]}})
        container = await gateway.init_storage()
        (item_id,) = container["items"]
        assert container["schedule"] == {"1000": [item_id]}
        assert [i["id"] for i in collect_due(container, 10**13)] == [item_id]
        assert await gateway.remove_item(item_id)
        assert (await gateway.read())["schedule"] == {}
        gateway.backups.cancel()


class TestStorageSize:
    @pytest.mark.asyncio
    async def test_warns_once(self):
        notifier = RecordingNotifier()
        backend = SizedBackend(int(WARNING_THRESHOLD) + 1)
        gateway = StorageGateway(backend, notifier=notifier)
        await gateway.check_storage_size()
        await gateway.check_storage_size()
        assert [n[0] for n in notifier.sent] == ["storage-warning"]
        state = await backend.get(None)
        assert state["sizeWarningActive"] is True
        assert state["lastSizeWarningAt"] <= int(time.time() * 1000)

    @pytest.mark.asyncio
    async def test_hysteresis_clears_below_threshold(self):
        backend = SizedBackend(1, {"sizeWarningActive": True})
        await StorageGateway(backend).check_storage_size()
        assert (await backend.get("sizeWarningActive")) == {"sizeWarningActive": False}

    @pytest.mark.asyncio
    async def test_throttled(self):
        notifier = RecordingNotifier()
        backend = SizedBackend(int(WARNING_THRESHOLD) + 1, {"lastSizeWarningAt": int(time.time() * 1000)})
        await StorageGateway(backend, notifier=notifier).check_storage_size()
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_unsupported_clears_flag(self):
        backend = SizedBackend(0, {"sizeWarningActive": True})
        await StorageGateway(backend).check_storage_size()
        assert (await backend.get("sizeWarningActive")) == {"sizeWarningActive": False}

    @pytest.mark.asyncio
    async def test_failures_swallowed(self):
        class Broken(MemoryBackend):
            async def get_bytes_in_use(self, keys=None):
                raise BackendError("nope")

        await StorageGateway(Broken()).check_storage_size()


class GroupSurface:
    def __init__(self, drop: int = 0):
        self.drop = drop
        self.created = []

    async def create_surface(self, urls, focus=True):
        self.created.append(list(urls))
        kept = urls[: len(urls) - self.drop]
        return SurfaceHandle("w1", [SurfaceEntry(f"w1:{n}", u) for n, u in enumerate(kept)])

    async def refresh_surface(self, surface_id):
        return None


class TestRestoreGroup:
    @pytest.mark.asyncio
    async def test_full_restore_removes_group(self, backend, gateway: StorageGateway):
        await backend.set({PRIMARY_KEY: store_of(
            item("b", index=2, groupId="g"), item("a", index=1, groupId="g"), item("solo"),
        )})
        surface = GroupSurface()
        assert await gateway.restore_group("g", surface)
        assert surface.created == [["https://e.example/a", "https://e.example/b"]]
        assert list((await gateway.read())["items"]) == ["solo"]
        gateway.backups.cancel()

    @pytest.mark.asyncio
    async def test_partial_restore_keeps_group(self, backend, gateway: StorageGateway):
        await backend.set({PRIMARY_KEY: store_of(item("a", groupId="g"), item("b", groupId="g"))})
        assert not await gateway.restore_group("g", GroupSurface(drop=1))
        assert len((await gateway.read())["items"]) == 2

    @pytest.mark.asyncio
    async def test_unknown_group(self, gateway: StorageGateway):
        assert not await gateway.restore_group("nope", GroupSurface())
