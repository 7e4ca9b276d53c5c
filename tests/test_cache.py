"""Tests for description cache keys and TTL behaviour."""

import asyncio
from datetime import datetime, timedelta, timezone

from repolens.cache import DescriptionCache, architecture_key, file_key, subsystem_key
from repolens.schema import FileRecord, Subsystem


class TestKeys:
    def test_subsystem_key_ignores_file_order(self):
        a = Subsystem("Routes", ["src/routes/a.x", "src/routes/b.x"])
        b = Subsystem("Routes", ["src/routes/b.x", "src/routes/a.x"])
        assert subsystem_key("acme__web", a) == subsystem_key("acme__web", b)

    def test_subsystem_key_changes_with_files(self):
        a = Subsystem("Routes", ["src/routes/a.x"])
        b = Subsystem("Routes", ["src/routes/a.x", "src/routes/new.x"])
        assert subsystem_key("acme__web", a) != subsystem_key("acme__web", b)

    def test_keys_scoped_by_repository(self):
        s = Subsystem("Routes", ["src/routes/a.x"])
        assert subsystem_key("acme__web", s) != subsystem_key("acme__api", s)

    def test_file_key_prefers_blob_sha(self):
        assert file_key("r", FileRecord("a.py", 10, "abc")) == file_key("r", FileRecord("b.py", 10, "abc"))
        assert file_key("r", FileRecord("a.py")) != file_key("r", FileRecord("b.py"))

    def test_architecture_key_follows_tree(self):
        subsystems = [Subsystem("Routes", ["a"])]
        assert architecture_key("r", "t1", subsystems) != architecture_key("r", "t2", subsystems)


class TestDescriptionCache:
    def test_ttl(self, store):
        now = datetime(2026, 5, 1, tzinfo=timezone.utc)
        clock = {"now": now}
        cache = DescriptionCache(store, ttl_hours=1, clock=lambda: clock["now"])

        async def run():
            await cache.put("k", "text")
            fresh = await cache.get_fresh("k")
            clock["now"] = now + timedelta(hours=2)
            expired = await cache.get_fresh("k")
            stale = await cache.get_any("k")
            return fresh, expired, stale

        fresh, expired, stale = asyncio.run(run())
        assert fresh.content == "text"
        assert expired is None
        assert stale.content == "text"

    def test_invalidate(self, store):
        cache = DescriptionCache(store)

        async def run():
            await cache.put("k", "text")
            await cache.invalidate("k")
            return await cache.get_any("k")

        assert asyncio.run(run()) is None

    def test_lock_serializes_same_key(self, store):
        cache = DescriptionCache(store)
        events = []

        async def hold(key, name):
            async with cache.lock(key):
                events.append(f"{name} in")
                await asyncio.sleep(0.01)
                events.append(f"{name} out")

        async def run():
            await asyncio.gather(hold("a", "first"), hold("a", "second"), hold("b", "other"))

        asyncio.run(run())
        assert events.index("first out") < events.index("second in")
        # A different key does not wait
        assert events.index("other in") < events.index("first out")

    def test_lock_dropped_after_last_release(self, store):
        cache = DescriptionCache(store)

        async def run():
            entered = asyncio.Event()
            release = asyncio.Event()

            async def holder():
                async with cache.lock("a"):
                    entered.set()
                    await release.wait()

            async def waiter():
                async with cache.lock("a"):
                    pass

            tasks = [asyncio.ensure_future(holder())]
            await entered.wait()
            tasks.append(asyncio.ensure_future(waiter()))
            await asyncio.sleep(0)
            # Still needed by the waiter
            assert "a" in cache._locks
            release.set()
            await asyncio.gather(*tasks)

        asyncio.run(run())
        assert cache._locks == {}
        assert cache._users == {}

    def test_cancelled_waiter_releases_its_claim(self, store):
        cache = DescriptionCache(store)

        async def run():
            release = asyncio.Event()

            async def holder():
                async with cache.lock("a"):
                    await release.wait()

            async def waiter():
                async with cache.lock("a"):
                    pass

            held = asyncio.ensure_future(holder())
            await asyncio.sleep(0)
            waiting = asyncio.ensure_future(waiter())
            await asyncio.sleep(0)
            waiting.cancel()
            await asyncio.gather(waiting, return_exceptions=True)
            release.set()
            await held

        asyncio.run(run())
        assert cache._locks == {}
