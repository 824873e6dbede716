"""Tests for storage sinks and the local file source."""

import os

import pytest

from transfer.errors import SourceUnavailable, StorageFailure
from transfer.storage import (
    DirectorySinkStrategy,
    LocalFileSource,
    open_first_sink,
)


class BrokenStrategy:
    def __init__(self):
        self.calls = 0

    def open_sink(self, name, declared_size):
        self.calls += 1
        raise StorageFailure("disk unavailable")


def test_sink_finalize_creates_destination(tmp_path):
    sink = DirectorySinkStrategy(str(tmp_path / "in")).open_sink("a.txt", 3)
    sink.write(b"ab")
    sink.write(b"c")
    sink.flush()
    # Nothing visible under the final name until finalize
    assert not (tmp_path / "in" / "a.txt").exists()

    path = sink.finalize()
    assert path == str(tmp_path / "in" / "a.txt")
    assert (tmp_path / "in" / "a.txt").read_bytes() == b"abc"
    assert os.listdir(tmp_path / "in") == ["a.txt"]


def test_sink_abort_leaves_nothing(tmp_path):
    sink = DirectorySinkStrategy(str(tmp_path)).open_sink("a.txt", 10)
    sink.write(b"partial")
    sink.abort()
    assert os.listdir(tmp_path) == []


def test_sink_replaces_existing_file(tmp_path):
    (tmp_path / "a.txt").write_bytes(b"old contents")
    sink = DirectorySinkStrategy(str(tmp_path)).open_sink("a.txt", 3)
    sink.write(b"new")
    sink.finalize()
    assert (tmp_path / "a.txt").read_bytes() == b"new"


def test_falls_back_to_next_strategy(tmp_path):
    broken = BrokenStrategy()
    sink = open_first_sink(
        [broken, DirectorySinkStrategy(str(tmp_path))], "a.txt", 1
    )
    sink.write(b"x")
    assert sink.finalize() == str(tmp_path / "a.txt")
    assert broken.calls == 1


def test_unwritable_directory_falls_back(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_bytes(b"")  # a file where a directory is expected
    fallback = tmp_path / "fallback"

    sink = open_first_sink(
        [
            DirectorySinkStrategy(str(blocker / "sub")),
            DirectorySinkStrategy(str(fallback)),
        ],
        "a.txt",
        0,
    )
    assert sink.finalize() == str(fallback / "a.txt")


def test_all_strategies_failing_raises():
    with pytest.raises(StorageFailure):
        open_first_sink([BrokenStrategy(), BrokenStrategy()], "a.txt", 1)


def test_no_strategies_raises():
    with pytest.raises(StorageFailure):
        open_first_sink([], "a.txt", 1)


def test_local_file_source(tmp_path):
    path = tmp_path / "photo.jpg"
    path.write_bytes(b"12345")

    resolved = LocalFileSource().resolve(str(path))
    assert resolved.name == "photo.jpg"
    assert resolved.size == 5
    with resolved.open() as f:
        assert f.read() == b"12345"


def test_local_file_source_missing(tmp_path):
    with pytest.raises(SourceUnavailable):
        LocalFileSource().resolve(str(tmp_path / "missing.bin"))


def test_local_file_source_rejects_unsendable_name(tmp_path):
    # A backslash is legal in a POSIX name but refused by the receiver
    path = tmp_path / "a\\b.txt"
    path.write_bytes(b"abc")
    with pytest.raises(SourceUnavailable):
        LocalFileSource().resolve(str(path))
