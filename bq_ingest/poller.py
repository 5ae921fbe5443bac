"""
Load Job Poller
---------------
FIFO queue of submitted load jobs, polled on a fixed interval by a
background thread. Each finished job is committed or rolled back through
the callbacks it was enqueued with.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

from bq_ingest.errors import Error, wrap
from bq_ingest.writer import API_ERRORS, BigQueryWriter, JobReference

logger = logging.getLogger(__name__)

CommitHook = Callable[[JobReference], None]
RollbackHook = Callable[[JobReference, Error], None]


@dataclass
class PendingJob:
    job_ref: JobReference
    on_commit: CommitHook
    on_rollback: RollbackHook


class LoadJobPoller:
    """
    Polls queued load jobs until they are DONE.

    Args:
        writer: Writer used for ``poll_job`` / ``check_job_result``.
        interval: Seconds between two polling rounds.
    """

    def __init__(self, writer: BigQueryWriter, interval: float = 10):
        self.writer = writer
        self.interval = interval
        self._queue: Deque[PendingJob] = deque()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def enqueue(self, job_ref: JobReference, on_commit: CommitHook, on_rollback: RollbackHook) -> None:
        with self._lock:
            self._queue.append(PendingJob(job_ref, on_commit, on_rollback))
        logger.debug(f"Queued load job {job_ref.job_id} for polling")

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._queue)

    def _pop(self) -> Optional[PendingJob]:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    def tick(self) -> int:
        """
        Poll every job queued when the round starts, once.

        Returns:
            Number of jobs that finished (committed or rolled back).
        """
        with self._lock:
            rounds = len(self._queue)

        finished = 0
        for _ in range(rounds):
            pending = self._pop()
            if pending is None:
                break
            job_ref = pending.job_ref

            try:
                status = self.writer.poll_job(job_ref)
            except (Error,) + API_ERRORS as e:
                logger.error(f"Failed to poll load job {job_ref.job_id}: {e}")
                pending.on_rollback(job_ref, wrap(e))
                finished += 1
                continue

            if not status.done:
                logger.debug(f"Load job {job_ref.job_id} still {status.state}")
                with self._lock:
                    self._queue.append(pending)
                continue

            finished += 1
            try:
                self.writer.check_job_result(job_ref, status)
            except Error as e:
                pending.on_rollback(job_ref, e)
                continue
            pending.on_commit(job_ref)
        return finished

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except Exception:
                # hooks raising must not kill the polling thread
                logger.exception("Load job polling round failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="bq-ingest-poller", daemon=True)
        self._thread.start()
        logger.info(f"Started load job poller (interval={self.interval}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Stopped load job poller")

    def drain(self, timeout: Optional[float] = None, sleep: Callable[[float], None] = time.sleep) -> bool:
        """Tick until the queue is empty. Returns False if ``timeout`` ran out first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self.tick()
            if not self.pending:
                return True
            if deadline is not None and time.monotonic() >= deadline:
                logger.warning(f"{self.pending} load jobs still running after {timeout}s")
                return False
            sleep(self.interval)
