import threading
import time

import pytest

from telfs.cache import ChunkCache, Fetcher, Key
from telfs.reader import PREFETCH_WINDOW, ChunkReader
from telfs.store import ChunkRecord, MetaStore


class FakeFetcher(Fetcher):
    def __init__(self):
        self.contents = {}
        self.calls = 0
        self._lock = threading.Lock()

    def _count(self):
        with self._lock:
            self.calls += 1

    def fetch(self, key, tg_message_id):
        self._count()
        return self.contents[tg_message_id]


class GatedFetcher(Fetcher):
    def __init__(self, inner, gate):
        self.inner = inner
        self.gate = gate

    def fetch(self, key, tg_message_id):
        self.inner._count()
        self.gate.wait(timeout=10)
        return self.inner.contents[tg_message_id]


@pytest.fixture
def meta(tmp_path):
    store = MetaStore(tmp_path / "meta.sqlite")
    yield store
    store.close()


def seed_file(meta, chunks, base_msg_id):
    ino = meta.create_file()
    fetcher = FakeFetcher()
    for i, payload in enumerate(chunks):
        msg_id = base_msg_id + i
        fetcher.contents[msg_id] = payload
        meta.put_chunk(ChunkRecord(ino=ino, idx=i, tg_message_id=msg_id, size=len(payload)))
    meta.set_size(ino, sum(len(c) for c in chunks))
    return ino, fetcher


def make_reader(meta, cache):
    return ChunkReader(meta, cache, 10)


def test_read_across_chunk_boundary(meta, tmp_path):
    ino, fetcher = seed_file(meta, [b"AAAAAAAAAA", b"BBBBBBB"], 1000)
    with make_reader(meta, ChunkCache(tmp_path / "cache", 100 << 10, fetcher)) as reader:
        assert reader.read_at(ino, 5, 8) == b"AABBB"


def test_read_past_eof_returns_short(meta, tmp_path):
    ino, fetcher = seed_file(meta, [b"Hello"], 1)
    with make_reader(meta, ChunkCache(tmp_path / "cache", 100 << 10, fetcher)) as reader:
        assert reader.read_at(ino, 20, 0) == b"Hello"


def test_read_starting_past_eof_is_empty(meta, tmp_path):
    ino, fetcher = seed_file(meta, [b"Hello"], 1)
    with make_reader(meta, ChunkCache(tmp_path / "cache", 100 << 10, fetcher)) as reader:
        assert reader.read_at(ino, 4, 30) == b""
        assert reader.read_at(ino, 0, 0) == b""


def test_caches_after_first_fetch(meta, tmp_path):
    ino, fetcher = seed_file(meta, [b"HelloWorld"], 1)
    with make_reader(meta, ChunkCache(tmp_path / "cache", 100 << 10, fetcher)) as reader:
        for _ in range(3):
            assert reader.read_at(ino, 10, 0) == b"HelloWorld"
    assert fetcher.calls == 1


def test_full_chunk_aligned(meta, tmp_path):
    ino, fetcher = seed_file(meta, [b"AAAAAAAAAA", b"BBBBBBBBBB", b"CCCCC"], 100)
    with make_reader(meta, ChunkCache(tmp_path / "cache", 100 << 10, fetcher)) as reader:
        assert reader.read_at(ino, 25, 0) == b"AAAAAAAAAABBBBBBBBBBCCCCC"


def test_cache_adopts_existing_files_on_restart(meta, tmp_path):
    ino, fetcher = seed_file(meta, [b"HelloWorld"], 1)
    directory = tmp_path / "cache"
    with make_reader(meta, ChunkCache(directory, 100 << 10, fetcher)) as reader:
        reader.read_at(ino, 10, 0)
    assert fetcher.calls == 1
    with make_reader(meta, ChunkCache(directory, 100 << 10, fetcher)) as reader:
        assert reader.read_at(ino, 10, 0) == b"HelloWorld"
    assert fetcher.calls == 1


def test_cache_invalidate_forces_refetch(meta, tmp_path):
    ino, fetcher = seed_file(meta, [b"HelloWorld"], 1)
    cache = ChunkCache(tmp_path / "cache", 100 << 10, fetcher)
    with make_reader(meta, cache) as reader:
        reader.read_at(ino, 10, 0)
        assert cache.invalidate(Key(ino, 0)) is True
        reader.read_at(ino, 10, 0)
    assert fetcher.calls == 2


def test_read_schedules_prefetch(meta, tmp_path):
    chunks = [bytes([ord("a") + i]) * 10 for i in range(12)]
    ino, fetcher = seed_file(meta, chunks, 100)
    gate = threading.Event()
    cache = ChunkCache(tmp_path / "cache", 100 << 10, GatedFetcher(fetcher, gate))
    reader = make_reader(meta, cache)
    result = {}

    def run():
        result["data"] = reader.read_at(ino, 10, 0)

    thread = threading.Thread(target=run)
    thread.start()
    expected = PREFETCH_WINDOW + 1
    deadline = time.monotonic() + 2
    while fetcher.calls < expected and time.monotonic() < deadline:
        time.sleep(0.01)
    observed = fetcher.calls
    gate.set()
    thread.join(timeout=10)
    reader.close()
    assert observed >= expected
    assert result["data"] == b"a" * 10
    assert all(cache.has(Key(ino, i)) for i in range(1, PREFETCH_WINDOW + 1))


def test_negative_offset_rejected(meta, tmp_path):
    ino, fetcher = seed_file(meta, [b"Hello"], 1)
    with make_reader(meta, ChunkCache(tmp_path / "cache", 100, fetcher)) as reader:
        with pytest.raises(ValueError):
            reader.read_at(ino, 3, -1)