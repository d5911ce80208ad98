"""Tests for job admission control."""

import threading

import pytest

from pixelpress.compression.resources import ResourceManager
from pixelpress.errors import ServerBusyError


def test_admits_up_to_ceiling():
    manager = ResourceManager(max_concurrent_jobs=2)
    manager.begin()
    manager.begin()

    assert manager.active_jobs == 2
    assert not manager.can_admit()
    with pytest.raises(ServerBusyError, match="Server busy"):
        manager.begin()
    assert manager.active_jobs == 2


def test_end_frees_a_slot():
    manager = ResourceManager(max_concurrent_jobs=1)
    manager.begin()
    manager.end()

    assert manager.can_admit()
    manager.begin()
    assert manager.active_jobs == 1


def test_end_never_goes_negative():
    manager = ResourceManager()
    manager.end()
    assert manager.active_jobs == 0


def test_slot_released_on_exception():
    manager = ResourceManager(max_concurrent_jobs=1)

    with pytest.raises(RuntimeError):
        with manager.slot():
            assert manager.active_jobs == 1
            raise RuntimeError("job failed")

    assert manager.active_jobs == 0


def test_rejected_job_holds_no_slot():
    manager = ResourceManager(max_concurrent_jobs=1)
    with manager.slot():
        with pytest.raises(ServerBusyError):
            with manager.slot():
                pass
        assert manager.active_jobs == 1
    assert manager.active_jobs == 0


def test_stats():
    manager = ResourceManager(max_concurrent_jobs=1)
    with manager.slot():
        with pytest.raises(ServerBusyError):
            manager.begin()
    with manager.slot():
        pass

    assert manager.get_stats() == {
        "active_jobs": 0,
        "total_jobs_processed": 2,
        "rejected_jobs": 1,
        "max_concurrent_jobs": 1,
    }


def test_invalid_ceiling():
    with pytest.raises(ValueError):
        ResourceManager(max_concurrent_jobs=0)


def test_concurrent_admission_respects_ceiling():
    manager = ResourceManager(max_concurrent_jobs=3)
    release = threading.Event()
    admitted = []
    rejected = []
    lock = threading.Lock()

    def job():
        try:
            with manager.slot():
                with lock:
                    admitted.append(threading.get_ident())
                release.wait(timeout=5)
        except ServerBusyError:
            with lock:
                rejected.append(threading.get_ident())

    threads = [threading.Thread(target=job) for _ in range(10)]
    for thread in threads:
        thread.start()

    # Every thread has either been admitted (and is blocked) or rejected
    for _ in range(500):
        with lock:
            if len(admitted) + len(rejected) == 10:
                break
        threading.Event().wait(0.01)

    assert manager.active_jobs <= 3
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert len(admitted) == 3
    assert len(rejected) == 7
    assert manager.active_jobs == 0
