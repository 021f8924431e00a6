"""Tests for the lock directory (synclock)."""

import os

import pytest

import synclock
from syncerrors import SyncError
from synclock import Lock


@pytest.fixture
def lock_path(tmp_path):
    return str(tmp_path / "sync-host-conf.lock")


def test_acquire_and_release(lock_path):
    lock = Lock(lock_path)

    lock.acquire()
    with open(os.path.join(lock_path, "pid")) as file:
        assert int(file.read()) == os.getpid()
    assert lock.locked

    lock.release()
    assert not os.path.exists(lock_path)
    assert not lock.locked


def test_context_manager(lock_path):
    with Lock(lock_path):
        assert os.path.isdir(lock_path)
    assert not os.path.exists(lock_path)


def test_live_lock_is_not_acquired_twice(lock_path):
    with Lock(lock_path):
        second = Lock(lock_path, pid=os.getpid() + 1)
        with pytest.raises(SyncError) as excinfo:
            second.acquire()
        assert excinfo.value.code == 11
        assert not second.locked

        # The failed attempt leaves the lock of its owner alone
        second.release()
        assert os.path.isdir(lock_path)


def test_stale_lock_is_cleared(lock_path, monkeypatch):
    os.mkdir(lock_path)
    with open(os.path.join(lock_path, "pid"), "w") as file:
        file.write("4242\n")
    monkeypatch.setattr(synclock, "pid_alive", lambda pid: pid != 4242)

    lock = Lock(lock_path, pid=1234)
    lock.acquire()

    assert lock.owner() == 1234
    lock.release()


def test_unknown_owner(lock_path):
    os.mkdir(lock_path)

    with pytest.raises(SyncError) as excinfo:
        Lock(lock_path).acquire()
    assert excinfo.value.code == 12


def test_lock_directory_cannot_be_created(tmp_path):
    lock = Lock(str(tmp_path / "missing" / "parent" / "x.lock"))

    with pytest.raises(SyncError) as excinfo:
        lock.acquire()
    assert excinfo.value.code == 4


def test_forced_release(lock_path):
    os.mkdir(lock_path)

    Lock(lock_path).release(force=True)

    assert not os.path.exists(lock_path)


def test_pid_alive():
    assert synclock.pid_alive(os.getpid())
    assert not synclock.pid_alive(0)
    assert not synclock.pid_alive(-5)


def test_stale_lock_cleared_by_concurrent_process(lock_path, monkeypatch):
    os.mkdir(lock_path)
    with open(os.path.join(lock_path, "pid"), "w") as file:
        file.write("4242\n")
    first = Lock(lock_path, pid=1111)
    second = Lock(lock_path, pid=2222)
    raced = []

    # The first process clears the stale lock and takes it while the
    # second one is between its stale check and its own clearing
    def pid_alive(pid):
        if not raced:
            raced.append(pid)
            first.acquire()
        return pid != 4242
    monkeypatch.setattr(synclock, "pid_alive", pid_alive)

    with pytest.raises(SyncError) as excinfo:
        second.acquire()

    assert excinfo.value.code == 11
    assert first.locked
    assert not second.locked
    assert os.listdir(lock_path) == ["pid"]
    assert first.owner() == 1111


def test_stale_lock_already_removed(lock_path):
    os.mkdir(lock_path)

    with pytest.raises(SyncError) as excinfo:
        Lock(lock_path).claim_stale(4242)
    assert excinfo.value.code == 11


def test_pid_file_cannot_be_written(lock_path, monkeypatch):
    real_open = open

    def failing_open(path, mode="r", *args, **kwargs):
        if "w" in mode:
            raise PermissionError("read-only file system")
        return real_open(path, mode, *args, **kwargs)
    monkeypatch.setattr("builtins.open", failing_open)

    with pytest.raises(SyncError) as excinfo:
        Lock(lock_path).acquire()

    assert excinfo.value.code == 4
    assert not os.path.exists(lock_path)
