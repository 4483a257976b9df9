"""
Tests for the PID-file single instance lock.
"""

import os

import pytest

from infra.instance_lock import SingleInstanceLock, check_single_instance


def test_second_lock_refused_while_held(tmp_path):
    first = check_single_instance("trader-test", lock_dir=str(tmp_path))
    assert first is not None
    assert (tmp_path / "trader-test.pid").read_text() == str(os.getpid())

    other = SingleInstanceLock("trader-test", lock_dir=str(tmp_path))
    # Pretend the lock belongs to a live foreign process
    other._is_process_running = lambda pid: True
    (tmp_path / "trader-test.pid").write_text("1")
    assert other.acquire() is False

    first.release()


def test_stale_lock_reclaimed(tmp_path):
    (tmp_path / "trader-test.pid").write_text("999999")
    lock = SingleInstanceLock("trader-test", lock_dir=str(tmp_path))
    lock._is_process_running = lambda pid: False

    assert lock.acquire() is True
    lock.release()
    assert not (tmp_path / "trader-test.pid").exists()


def test_garbage_lock_file_reclaimed(tmp_path):
    (tmp_path / "trader-test.pid").write_text("not-a-pid")
    lock = SingleInstanceLock("trader-test", lock_dir=str(tmp_path))

    assert lock.acquire() is True
    lock.release()


def test_context_manager_releases(tmp_path):
    with SingleInstanceLock("trader-test", lock_dir=str(tmp_path)) as lock:
        assert lock.acquired
    assert not (tmp_path / "trader-test.pid").exists()


def test_context_manager_raises_when_held(tmp_path):
    (tmp_path / "trader-test.pid").write_text("1")
    lock = SingleInstanceLock("trader-test", lock_dir=str(tmp_path))
    lock._is_process_running = lambda pid: True

    with pytest.raises(RuntimeError):
        with lock:
            pass
