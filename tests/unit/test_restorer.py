"""
Tests for the restore pipeline.
"""

import os
from pathlib import Path
from typing import Dict, Generator
from unittest.mock import patch

import pytest

from kvbackup.archiver import Archiver
from kvbackup.errors import SetupError
from kvbackup.platform import restore_path
from kvbackup.pool import WorkerPool
from kvbackup.report import FileStatus
from kvbackup.restorer import Restorer
from kvbackup.store import Entry
from kvbackup.store.sqlite import SqliteStore

MTIME = 1_600_000_000


@pytest.fixture
def store(tmp_path: Path) -> Generator[SqliteStore, None, None]:
    with SqliteStore(tmp_path / "backup.db") as s:
        s.ensure_collection()
        yield s


@pytest.fixture
def sources(tmp_path: Path, store: SqliteStore) -> Dict[str, bytes]:
    """Back up a small tree and return its contents by absolute path."""
    src = tmp_path / "src"
    (src / "deep" / "er").mkdir(parents=True)
    contents = {
        str(src / "top.txt"): b"top level\n",
        str(src / "deep" / "mid.bin"): bytes(range(256)) * 16,
        str(src / "deep" / "er" / "leaf.txt"): b"leaf\n" * 100,
        str(src / "empty"): b"",
    }
    for path, data in contents.items():
        Path(path).write_bytes(data)
        os.utime(path, (MTIME + 0.25, MTIME + 0.25))
    with WorkerPool(4) as pool:
        assert Archiver(store).run(contents, pool).ok
    return contents


@pytest.fixture
def out(tmp_path: Path) -> Path:
    path = tmp_path / "out"
    path.mkdir()
    return path


def assert_restored(out: Path, sources: Dict[str, bytes]) -> None:
    for path, data in sources.items():
        target = Path(restore_path(str(out), path))
        assert target.read_bytes() == data
        assert os.stat(target).st_mtime == MTIME


def test_restore_round_trip(
    store: SqliteStore, sources: Dict[str, bytes], out: Path
) -> None:
    with WorkerPool(3) as pool:
        report = Restorer(store, out).run(pool)

    assert report.ok
    assert report.count(FileStatus.RESTORED) == len(sources)
    assert_restored(out, sources)


def test_streaming_restore_matches(
    store: SqliteStore, sources: Dict[str, bytes], out: Path
) -> None:
    with WorkerPool(2) as dpool, WorkerPool(3) as wpool:
        report = Restorer(store, out).run_streaming(dpool, wpool, queue_size=1)

    assert report.ok
    assert report.count(FileStatus.RESTORED) == len(sources)
    assert_restored(out, sources)


def test_restore_overwrites_existing_file(
    store: SqliteStore, sources: Dict[str, bytes], out: Path
) -> None:
    path = next(iter(sources))
    target = Path(restore_path(str(out), path))
    target.parent.mkdir(parents=True)
    target.write_bytes(b"stale")

    with WorkerPool(2) as pool:
        Restorer(store, out).run(pool)
    assert target.read_bytes() == sources[path]


def test_result_targets(
    store: SqliteStore, sources: Dict[str, bytes], out: Path
) -> None:
    seen = []
    with WorkerPool(2) as pool:
        Restorer(store, out).run(pool, on_result=seen.append)
    assert {r.path: r.target for r in seen} == {
        path: restore_path(str(out), path) for path in sources
    }


def test_missing_output_dir(store: SqliteStore, tmp_path: Path) -> None:
    with pytest.raises(SetupError, match="does not exist"):
        Restorer(store, tmp_path / "nowhere")


def test_output_dir_is_a_file(store: SqliteStore, tmp_path: Path) -> None:
    not_a_dir = tmp_path / "file"
    not_a_dir.write_text("x")
    with pytest.raises(SetupError, match="not a directory"):
        Restorer(store, not_a_dir)


def test_empty_collection(store: SqliteStore, out: Path) -> None:
    with WorkerPool(2) as pool:
        report = Restorer(store, out).run(pool)
    assert report.results == []
    assert list(out.iterdir()) == []


def test_absent_collection(tmp_path: Path, out: Path) -> None:
    with SqliteStore(tmp_path / "fresh.db") as fresh:
        with WorkerPool(2) as pool:
            report = Restorer(fresh, out).run(pool)
        with WorkerPool(2) as dpool, WorkerPool(2) as wpool:
            streamed = Restorer(fresh, out).run_streaming(dpool, wpool)
    assert report.results == []
    assert streamed.results == []


@pytest.mark.parametrize("streaming", [False, True])
def test_corrupt_entry_fails_alone(
    store: SqliteStore, sources: Dict[str, bytes], out: Path, streaming: bool
) -> None:
    store.put(Entry(key="/corrupt/entry", mtime=MTIME, level=9, data=b"junk"))

    restorer = Restorer(store, out)
    if streaming:
        with WorkerPool(2) as dpool, WorkerPool(2) as wpool:
            report = restorer.run_streaming(dpool, wpool)
    else:
        with WorkerPool(2) as pool:
            report = restorer.run(pool)

    [failure] = report.failures
    assert failure.path == "/corrupt/entry"
    assert "error decompressing entry" in str(failure.error)
    assert report.count(FileStatus.RESTORED) == len(sources)
    assert_restored(out, sources)


def test_file_and_directory_collision(
    store: SqliteStore, sources: Dict[str, bytes], out: Path
) -> None:
    # One key is a file, another needs that same path to be a directory
    parent = next(p for p in sources if p.endswith("top.txt"))
    child = os.path.join(parent, "child")
    blob = store.get(parent)
    assert blob is not None
    store.put(Entry(key=child, mtime=MTIME, level=9, data=blob.data))

    with WorkerPool(1) as pool:
        report = Restorer(store, out).run(pool)

    assert len(report.failures) == 1
    assert report.count(FileStatus.RESTORED) == len(sources)


def test_invalid_queue_size(store: SqliteStore, out: Path) -> None:
    with WorkerPool(1) as dpool, WorkerPool(1) as wpool:
        with pytest.raises(ValueError):
            Restorer(store, out).run_streaming(dpool, wpool, queue_size=0)


@pytest.mark.parametrize("streaming", [False, True])
def test_unexpected_write_error_fails_alone(
    store: SqliteStore, sources: Dict[str, bytes], out: Path, streaming: bool
) -> None:
    victim = sorted(sources)[0]
    real_utime = os.utime

    def utime(path, times):
        if path == restore_path(str(out), victim):
            raise RuntimeError("clock exploded")
        return real_utime(path, times)

    restorer = Restorer(store, out)
    with patch("os.utime", side_effect=utime):
        if streaming:
            with WorkerPool(2) as dpool, WorkerPool(2) as wpool:
                report = restorer.run_streaming(dpool, wpool)
        else:
            with WorkerPool(2) as pool:
                report = restorer.run(pool)

    [failure] = report.failures
    assert failure.path == victim
    assert isinstance(failure.error.cause, RuntimeError)
    assert report.count(FileStatus.RESTORED) == len(sources) - 1


def test_unexpected_decompress_error_in_stream(
    store: SqliteStore, sources: Dict[str, bytes], out: Path
) -> None:
    victim = sorted(sources)[0]
    restorer = Restorer(store, out)
    real_decompress = restorer._decompress

    def decompress(entry: Entry) -> bytes:
        if entry.key == victim:
            raise MemoryError("too big")
        return real_decompress(entry)

    with patch.object(restorer, "_decompress", side_effect=decompress):
        with WorkerPool(2) as dpool, WorkerPool(2) as wpool:
            report = restorer.run_streaming(dpool, wpool)

    assert [f.path for f in report.failures] == [victim]
    assert report.count(FileStatus.RESTORED) == len(sources) - 1


def test_missing_mtime_column_restores_header_time(
    store: SqliteStore, sources: Dict[str, bytes], out: Path
) -> None:
    path = next(iter(sources))
    stored = store.get(path)
    assert stored is not None
    store.put(Entry(key=path, mtime=None, level=stored.level, data=stored.data))

    with WorkerPool(2) as pool:
        assert Restorer(store, out).run(pool).ok
    assert_restored(out, sources)


@pytest.mark.skipif(os.name == "nt", reason="POSIX byte file names")
def test_undecodable_key_restores(
    store: SqliteStore, out: Path, tmp_path: Path
) -> None:
    raw = os.path.join(os.fsencode(tmp_path), b"bad\xff.txt")
    with open(raw, "wb") as f:
        f.write(b"odd name")
    with WorkerPool(1) as pool:
        assert Archiver(store).run([os.fsdecode(raw)], pool).ok

    with WorkerPool(1) as pool:
        assert Restorer(store, out).run(pool).ok
    target = os.path.join(os.fsencode(out), raw.lstrip(b"/"))
    with open(target, "rb") as f:
        assert f.read() == b"odd name"
