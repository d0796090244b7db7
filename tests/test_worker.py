"""Tests for the operation runner."""

from __future__ import annotations

import threading

import pytest

from pulito.core.worker import DEFAULT_TIMEOUTS, OperationClass, OperationRunner
from pulito.errors import OperationBusy, OperationTimeout


@pytest.fixture
def runner():
    r = OperationRunner(max_workers=2, timeouts={OperationClass.SHORT: 0.2})
    yield r
    r.shutdown()


class TestOperationRunner:
    def test_returns_result(self, runner):
        assert runner.run(lambda cancel: 42) == 42

    def test_propagates_exceptions(self, runner):
        def fail(cancel):
            raise KeyError("boom")

        with pytest.raises(KeyError):
            runner.run(fail)

    def test_timeout_sets_cancel(self, runner):
        seen = threading.Event()
        release = threading.Event()

        def slow(cancel):
            cancel.wait(5)
            if cancel.is_set():
                seen.set()
            release.wait(5)

        with pytest.raises(OperationTimeout):
            runner.run(slow, OperationClass.SHORT)
        assert seen.wait(2)
        release.set()

    def test_exclusive_key_rejects_overlap(self, runner):
        started = threading.Event()
        release = threading.Event()
        results = []

        def holder(cancel):
            started.set()
            release.wait(5)
            return "done"

        thread = threading.Thread(
            target=lambda: results.append(runner.run(holder, OperationClass.MEDIUM, exclusive="scan"))
        )
        thread.start()
        assert started.wait(2)
        with pytest.raises(OperationBusy):
            runner.run(lambda cancel: None, exclusive="scan")
        # other keys are unaffected
        assert runner.run(lambda cancel: "ok", exclusive="clean") == "ok"
        release.set()
        thread.join(5)
        assert results == ["done"]
        assert runner.run(lambda cancel: "again", exclusive="scan") == "again"

    def test_key_released_after_failure(self, runner):
        def fail(cancel):
            raise ValueError

        with pytest.raises(ValueError):
            runner.run(fail, exclusive="clean")
        assert runner.run(lambda cancel: 1, exclusive="clean") == 1

    def test_timeouts(self, runner):
        assert runner.timeout_for(OperationClass.SHORT) == 0.2
        assert runner.timeout_for(OperationClass.LONG) == DEFAULT_TIMEOUTS[OperationClass.LONG]
        assert DEFAULT_TIMEOUTS[OperationClass.SHORT] < DEFAULT_TIMEOUTS[OperationClass.MEDIUM]
