"""Tests for background side writes."""

import logging
import threading

import pytest

from sealedlog.errors import PublishError
from sealedlog.tasks import TaskRunner


@pytest.fixture
def runner():
    instance = TaskRunner(max_workers=2)
    yield instance
    instance.close()


class TestTaskRunner:
    """Tests for TaskRunner and BackgroundTask."""

    def test_result(self, runner):
        task = runner.submit("add", lambda a, b: a + b, 2, 3)
        assert task.result(timeout=5) == 5
        assert task.succeeded
        assert task.exception() is None

    def test_failure_is_captured(self, runner):
        def boom():
            raise PublishError("nope")

        task = runner.submit("boom", boom)
        assert isinstance(task.exception(timeout=5), PublishError)
        assert task.succeeded is False
        with pytest.raises(PublishError):
            task.result()

    def test_failure_is_logged(self, runner, caplog):
        def boom():
            raise PublishError("nope")

        with caplog.at_level(logging.WARNING, logger="sealedlog.tasks"):
            task = runner.submit("side write", boom)
            task.exception(timeout=5)
            runner.wait(timeout=5)
        assert any("side write" in r.getMessage() for r in caplog.records)

    def test_wait_for_pending(self, runner):
        release = threading.Event()
        task = runner.submit("blocked", release.wait, 5)
        assert not task.done()
        assert runner.pending() == 1
        release.set()
        runner.wait(timeout=5)
        assert task.done()

    def test_submit_after_close(self):
        instance = TaskRunner()
        instance.close()
        with pytest.raises(RuntimeError):
            instance.submit("late", lambda: None)

    def test_close_twice(self):
        instance = TaskRunner()
        instance.close()
        instance.close()

    def test_repr(self, runner):
        task = runner.submit("named", lambda: None)
        task.result(timeout=5)
        assert "named" in repr(task)
