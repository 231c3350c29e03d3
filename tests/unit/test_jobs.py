"""Unit tests for the background job runner."""
import threading

import pytest

from idmsync.core.jobs import JobRunner


@pytest.fixture
def runner():
    job_runner = JobRunner(max_workers=2)
    yield job_runner
    job_runner.shutdown()


def test_wait_includes_jobs_queued_by_running_jobs(runner):
    done = []

    def second():
        done.append("second")

    def first():
        done.append("first")
        runner.submit(second)

    runner.submit(first)
    runner.wait(timeout=5)

    assert done == ["first", "second"]


def test_wait_ignores_failed_jobs(runner):
    def boom():
        raise RuntimeError("boom")

    future = runner.submit(boom)
    runner.wait(timeout=5)

    assert isinstance(future.exception(), RuntimeError)


def test_wait_gives_up_on_a_stalled_job(runner):
    release = threading.Event()
    runner.submit(release.wait)
    try:
        with pytest.raises(TimeoutError):
            runner.wait(timeout=0.1)
    finally:
        release.set()

    runner.wait(timeout=5)
