"""
Worker - Background process that executes expansion jobs from the store.

The worker:
1. Recovers jobs abandoned by crashed workers
2. Claims queued jobs one at a time
3. Hands each to the orchestrator, which reports progress back to the store
4. Shuts down cleanly on SIGINT / SIGTERM
"""

import signal
import time
import uuid
from typing import Optional
import logging

from expansion.orchestrator import JobOrchestrator

log = logging.getLogger(__name__)


class Worker:
    """
    Background worker that processes expansion jobs.

    Usage:
        worker = Worker(orchestrator)
        worker.run()
    """

    def __init__(self, orchestrator: JobOrchestrator, worker_id: str = None,
                 poll_interval: Optional[float] = None, install_signal_handlers: bool = True):
        """
        Initialize the worker.

        Args:
            orchestrator: Runs the claimed jobs
            worker_id: Unique identifier for this worker. Auto-generated if not provided.
            poll_interval: Seconds between polls of an empty queue. Defaults to settings.
            install_signal_handlers: Register SIGINT/SIGTERM handlers (main thread only)
        """
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:6]}"
        self.orchestrator = orchestrator
        self.poll_interval = (orchestrator.settings.poll_interval_seconds
                              if poll_interval is None else poll_interval)

        self._running = False
        self._current_job_id: Optional[int] = None
        self._shutdown_requested = False
        self.jobs_processed = 0

        if install_signal_handlers:
            signal.signal(signal.SIGINT, self._handle_shutdown)
            signal.signal(signal.SIGTERM, self._handle_shutdown)

        log.info(f"Worker {self.worker_id} initialized")

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signals gracefully."""
        log.info(f"Worker {self.worker_id} received shutdown signal")
        self._shutdown_requested = True

        # A running job stops dispatching AI calls and ends partial
        if self._current_job_id is not None:
            log.info(f"Cancelling job {self._current_job_id}")
            self.orchestrator.cancel(self._current_job_id)

    def run(self, max_jobs: Optional[int] = None):
        """
        Main worker loop. Processes jobs until shutdown.

        Args:
            max_jobs: Stop after this many jobs (None runs until shutdown)
        """
        log.info(f"Worker {self.worker_id} starting")
        self._running = True

        # Cleanup any stale jobs from crashed workers
        self.orchestrator.recover_stale_jobs()

        while self._running and not self._shutdown_requested:
            if max_jobs is not None and self.jobs_processed >= max_jobs:
                break

            job_id = self.run_once()
            if job_id is None:
                if max_jobs is not None:
                    break
                # No jobs available, wait before checking again
                time.sleep(self.poll_interval)

        self._running = False
        log.info(f"Worker {self.worker_id} stopped after {self.jobs_processed} jobs")

    def run_once(self) -> Optional[int]:
        """Claim and run at most one job. Returns its ID, or None if the queue was empty."""
        job = self.orchestrator.store.claim_next(self.worker_id)
        if job is None:
            return None

        self._current_job_id = job.id
        try:
            status = self.orchestrator.run_job(job)
            log.info(f"Worker {self.worker_id} finished job {job.id}: {status}")
        finally:
            self._current_job_id = None
        self.jobs_processed += 1
        return job.id

    def stop(self):
        """Stop the worker gracefully."""
        self._shutdown_requested = True


def main():
    """Run the worker as a standalone process."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    from main import build_orchestrator
    from expansion.config import ExpansionSettings

    worker = Worker(build_orchestrator(ExpansionSettings.from_env()))

    print(f"Worker {worker.worker_id} starting...")
    print("Press Ctrl+C to stop")

    try:
        worker.run()
    except KeyboardInterrupt:
        print("\nShutting down...")
        worker.stop()


if __name__ == "__main__":
    main()
