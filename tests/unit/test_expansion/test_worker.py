import signal
from unittest.mock import MagicMock

import pytest

from expansion.job_store import JobStatus
from expansion.worker import Worker


def _job(job_id):
    job = MagicMock()
    job.id = job_id
    return job


@pytest.fixture
def orchestrator():
    orch = MagicMock()
    orch.settings.poll_interval_seconds = 0.01
    orch.run_job.return_value = JobStatus.COMPLETED
    return orch


def test_run_processes_up_to_max_jobs(orchestrator):
    orchestrator.store.claim_next.side_effect = [_job(1), _job(2), _job(3)]
    worker = Worker(orchestrator, worker_id="w-test", install_signal_handlers=False)

    worker.run(max_jobs=2)

    assert worker.jobs_processed == 2
    orchestrator.recover_stale_jobs.assert_called_once()
    assert [c.args[0].id for c in orchestrator.run_job.call_args_list] == [1, 2]
    orchestrator.store.claim_next.assert_called_with("w-test")


def test_run_stops_when_queue_drains(orchestrator):
    orchestrator.store.claim_next.side_effect = [_job(1), None]
    worker = Worker(orchestrator, install_signal_handlers=False)
    worker.run(max_jobs=5)
    assert worker.jobs_processed == 1


def test_run_once_when_idle(orchestrator):
    orchestrator.store.claim_next.return_value = None
    worker = Worker(orchestrator, install_signal_handlers=False)
    assert worker.run_once() is None
    orchestrator.run_job.assert_not_called()


def test_shutdown_cancels_current_job(orchestrator):
    worker = Worker(orchestrator, install_signal_handlers=False)

    def run_job(job):
        worker._handle_shutdown(signal.SIGTERM, None)
        return JobStatus.PARTIAL

    orchestrator.run_job.side_effect = run_job
    orchestrator.store.claim_next.side_effect = [_job(7), _job(8)]

    worker.run()

    orchestrator.cancel.assert_called_once_with(7)
    assert worker.jobs_processed == 1


def test_shutdown_between_jobs_cancels_nothing(orchestrator):
    worker = Worker(orchestrator, install_signal_handlers=False)
    worker._handle_shutdown(signal.SIGINT, None)
    worker.run()
    orchestrator.cancel.assert_not_called()
    orchestrator.store.claim_next.assert_not_called()


def test_worker_id_generated(orchestrator):
    worker = Worker(orchestrator, install_signal_handlers=False)
    assert worker.worker_id.startswith("worker-")
    assert worker.poll_interval == 0.01
