"""
Tests for the background build pool.

Run with: pytest tests/test_tasks.py -v
"""
import threading
import time

import pytest

from deltaserver.errors import AlreadyBuildingError, BuildError
from deltaserver.tasks import BuildTasks

from conftest import SRC, DEST, DELTA_KEY


def wait_until_idle(tasks, timeout=5.0):
    deadline = time.monotonic() + timeout
    while tasks.running() and time.monotonic() < deadline:
        time.sleep(0.01)
    return tasks.running()


@pytest.fixture
def tasks():
    pool = BuildTasks(max_workers=2)
    yield pool
    pool.shutdown(wait=True)


class TestBuildTasks:

    def test_submit_runs_in_background(self, tasks):
        release = threading.Event()
        future = tasks.submit("patch/key", release.wait, 5)

        assert tasks.running() == ["patch/key"]
        assert tasks.get("patch/key") is future

        release.set()
        assert future.result(timeout=5) is True
        assert wait_until_idle(tasks) == []
        assert tasks.get("patch/key") is None

    def test_failed_build_is_dropped(self, tasks):
        def fail():
            raise BuildError("Failed to build delta")

        future = tasks.submit("image/key", fail)

        with pytest.raises(BuildError):
            future.result(timeout=5)
        assert wait_until_idle(tasks) == []

    def test_submit_after_shutdown(self, tasks):
        tasks.shutdown(wait=True)

        with pytest.raises(RuntimeError):
            tasks.submit("patch/key", print)


def test_shut_down_pool_releases_lock(context):
    context.tasks.shutdown(wait=True)

    with pytest.raises(RuntimeError):
        context.patches.request(SRC, DEST)

    assert not context.patches.locks.is_held(DELTA_KEY)


def test_build_outlives_request(context, patch_computer):
    gate = threading.Event()
    patch_computer.gate = gate

    with pytest.raises(AlreadyBuildingError):
        context.patches.request(SRC, DEST)

    assert context.tasks.running() == [f"patch/{DELTA_KEY}"]
    gate.set()
    assert wait_until_idle(context.tasks) == []
    assert context.patch_store.exists(context.patches.request(SRC, DEST))
