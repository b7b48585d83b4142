import asyncio
import gc

import pytest

from app.exceptions import ToolFailure
from app.services.audio_store import AudioFileState, AudioStore, sanitize_video_id


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_store_wipes_cache_dir_on_start(tmp_path):
    base_dir = tmp_path / "audio"
    base_dir.mkdir()
    stale = base_dir / "old.m4a"
    stale.write_bytes(b"stale")

    AudioStore(base_dir)

    assert base_dir.is_dir()
    assert not stale.exists()


def test_concurrent_get_or_allocate_shares_one_entry(tmp_path):
    async def scenario():
        async with AudioStore(tmp_path / "audio") as store:
            handles = await asyncio.gather(*(store.get_or_allocate("X") for _ in range(5)))
            return handles, len(store)

    handles, size = asyncio.run(scenario())

    assert all(handle is handles[0] for handle in handles)
    assert handles[0].state is AudioFileState.NEW
    assert size == 1


def test_capacity_evicts_least_recently_used_and_deletes_files(tmp_path):
    async def scenario():
        async with AudioStore(tmp_path / "audio", capacity=2) as store:
            first = await store.get_or_allocate("a")
            first_path = first.path
            first_path.write_bytes(b"a")
            await store.get_or_allocate("b")
            del first

            await store.get_or_allocate("c")
            gc.collect()
            return "a" in store, "b" in store, "c" in store, first_path.exists()

    has_a, has_b, has_c, a_exists = asyncio.run(scenario())

    assert (has_a, has_b, has_c) == (False, True, True)
    assert not a_exists


def test_recent_access_protects_entry_from_capacity_eviction(tmp_path):
    async def scenario():
        async with AudioStore(tmp_path / "audio", capacity=2) as store:
            await store.get_or_allocate("a")
            await store.get_or_allocate("b")
            await store.get_or_allocate("a")
            await store.get_or_allocate("c")
            return "a" in store, "b" in store

    assert asyncio.run(scenario()) == (True, False)


def test_idle_entries_expire_and_access_refreshes_expiry(tmp_path):
    clock = FakeClock()

    async def scenario():
        async with AudioStore(tmp_path / "audio", ttl=10, timer=clock) as store:
            await store.get_or_allocate("a")
            await store.get_or_allocate("b")

            clock.now += 8
            await store.get_or_allocate("a")

            clock.now += 5
            await store.get_or_allocate("c")
            return "a" in store, "b" in store, "c" in store

    assert asyncio.run(scenario()) == (True, False, True)


def test_evicted_entry_files_survive_while_handle_is_held(tmp_path):
    async def scenario():
        async with AudioStore(tmp_path / "audio") as store:
            handle = await store.get_or_allocate("a")
            handle.path.write_bytes(b"audio")

            await store.remove("a")
            gc.collect()
            still_there = handle.path.exists()
            fresh = await store.get_or_allocate("a")
            is_new_entry = fresh is not handle and fresh.path != handle.path

            path = handle.path
            del handle
            gc.collect()
            return still_there, is_new_entry, path.exists()

    still_there, is_new_entry, exists_after_release = asyncio.run(scenario())

    assert still_there
    assert is_new_entry
    assert not exists_after_release


def test_remove_missing_entry_is_noop(tmp_path):
    async def scenario():
        async with AudioStore(tmp_path / "audio") as store:
            await store.remove("missing")
            return len(store)

    assert asyncio.run(scenario()) == 0


def test_video_id_is_sanitized_for_paths(tmp_path):
    base_dir = tmp_path / "audio"

    async def scenario():
        async with AudioStore(base_dir) as store:
            return await store.get_or_allocate("../../etc/passwd")

    handle = asyncio.run(scenario())

    assert handle.path.parent == base_dir
    assert handle.temp_path.parent == base_dir
    assert handle.id == "../../etc/passwd"
    assert handle.path.name.startswith("______etc_passwd.")
    assert sanitize_video_id("dQw4w9WgXcQ") == "dQw4w9WgXcQ"
    assert sanitize_video_id("") == "_"


def test_ids_that_sanitize_alike_are_separate_entries(tmp_path):
    async def scenario():
        async with AudioStore(tmp_path / "audio") as store:
            dotted = await store.get_or_allocate("a.b")
            underscored = await store.get_or_allocate("a_b")
            return dotted, underscored, len(store), "a.b" in store, "a_b" in store

    dotted, underscored, size, has_dotted, has_underscored = asyncio.run(scenario())

    assert dotted is not underscored
    assert (dotted.id, underscored.id) == ("a.b", "a_b")
    assert dotted.path != underscored.path
    assert size == 2
    assert has_dotted and has_underscored


def test_store_requires_start(tmp_path):
    store = AudioStore(tmp_path / "audio")

    with pytest.raises(RuntimeError):
        asyncio.run(store.get_or_allocate("a"))


def test_get_or_download_moves_temp_file_and_reuses_result(tmp_path):
    calls = []

    async def scenario():
        async with AudioStore(tmp_path / "audio") as store:
            handle = await store.get_or_allocate("a")

            async def download():
                calls.append("a")
                handle.temp_path.write_bytes(b"audio")

            with await handle.get_or_download(download) as fh:
                first = fh.read()
            with await handle.get_or_download(download) as fh:
                second = fh.read()
            return handle, first, second

    handle, first, second = asyncio.run(scenario())

    assert first == second == b"audio"
    assert calls == ["a"]
    assert handle.ready
    assert not handle.temp_path.exists()


def test_get_or_download_failure_is_terminal(tmp_path):
    async def scenario():
        async with AudioStore(tmp_path / "audio") as store:
            handle = await store.get_or_allocate("a")

            async def failing():
                raise ToolFailure("ERROR: boom")

            with pytest.raises(ToolFailure):
                await handle.get_or_download(failing)
            state = handle.state

            async def unused():
                raise AssertionError("should not download again")

            with pytest.raises(ToolFailure):
                await handle.get_or_download(unused)
            return state

    assert asyncio.run(scenario()) is AudioFileState.ERRORED


def test_get_or_download_without_output_file_fails(tmp_path):
    async def scenario():
        async with AudioStore(tmp_path / "audio") as store:
            handle = await store.get_or_allocate("a")

            async def silent():
                return None

            with pytest.raises(ToolFailure):
                await handle.get_or_download(silent)
            return handle.state

    assert asyncio.run(scenario()) is AudioFileState.ERRORED


def test_cancelled_download_can_be_retried(tmp_path):
    async def scenario():
        async with AudioStore(tmp_path / "audio") as store:
            handle = await store.get_or_allocate("a")

            async def hang():
                await asyncio.sleep(10)

            task = asyncio.create_task(handle.get_or_download(hang))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return handle.state

    assert asyncio.run(scenario()) is AudioFileState.NEW
