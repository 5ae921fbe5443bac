"""
Load job output (``jobs.insert`` multipart upload + ``jobs.get``).

With ``async_job_polling`` the write returns as soon as the job is
submitted and the ``LoadJobPoller`` reports the outcome later; otherwise
each write waits for its job.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from bq_ingest.chunk import Chunk
from bq_ingest.config import LoadOutputConfig
from bq_ingest.errors import Error
from bq_ingest.outputs.base import BigQueryOutput
from bq_ingest.poller import LoadJobPoller
from bq_ingest.writer import JobReference, create_job_id

logger = logging.getLogger(__name__)


class LoadOutput(BigQueryOutput):
    """
    Delivers each chunk as one load job.

    Args:
        on_commit: Called with the chunk once its job succeeded.
        on_rollback: Called with the chunk and the error once its job failed.
    """

    config: LoadOutputConfig
    is_load = True

    def __init__(
        self,
        config: LoadOutputConfig,
        on_commit: Optional[Callable[[Chunk], None]] = None,
        on_rollback: Optional[Callable[[Chunk, Error], None]] = None,
        **kwargs: Any,
    ):
        super().__init__(config, **kwargs)
        self.on_commit = on_commit
        self.on_rollback = on_rollback
        self.poller: Optional[LoadJobPoller] = None
        if config.async_job_polling:
            self.poller = LoadJobPoller(self.writer, interval=config.wait_job_interval)

        self.failed: List[Tuple[Chunk, Error]] = []
        self._failed_lock = threading.Lock()
        self._chunks: Dict[str, Chunk] = {}

    def write(self, chunk: Chunk) -> JobReference:
        table_ref = self.next_table()
        schema = self.get_schema()
        job_id = None
        if self.config.prevent_duplicate_load:
            job_id = create_job_id(chunk.unique_id, table_ref, schema, self.writer.options)

        with chunk.open() as upload_source:
            job_ref = self.writer.submit_load_job(
                table_ref, upload_source, schema, job_id=job_id, chunk_id=chunk.unique_id
            )

        if self.poller is None:
            self.writer.await_job(job_ref)
            self.commit(job_ref, chunk)
            return job_ref

        self._chunks[job_ref.job_id] = chunk
        self.poller.enqueue(job_ref, self._commit_polled, self._rollback_polled)
        return job_ref

    def commit(self, job_ref: JobReference, chunk: Chunk) -> None:
        logger.info(f"Load job {job_ref.job_id} committed chunk {chunk.unique_id_hex} into {job_ref.table}")
        if self.on_commit is not None:
            self.on_commit(chunk)

    def rollback(self, job_ref: JobReference, chunk: Chunk, error: Error) -> None:
        logger.error(f"Load job {job_ref.job_id} failed for chunk {chunk.unique_id_hex}: {error}")
        if not error.retryable and self.escalate(chunk, error):
            return
        with self._failed_lock:
            self.failed.append((chunk, error))
        if self.on_rollback is not None:
            self.on_rollback(chunk, error)

    def take_retryable_failures(self) -> List[Tuple[Chunk, Error]]:
        """Remove and return the failed chunks that may load if resubmitted."""
        with self._failed_lock:
            retryable = [entry for entry in self.failed if entry[1].retryable]
            self.failed = [entry for entry in self.failed if not entry[1].retryable]
        return retryable

    def _commit_polled(self, job_ref: JobReference) -> None:
        self.commit(job_ref, self._chunks.pop(job_ref.job_id))

    def _rollback_polled(self, job_ref: JobReference, error: Error) -> None:
        self.rollback(job_ref, self._chunks.pop(job_ref.job_id), error)

    def start(self) -> None:
        if self.poller is not None:
            self.poller.start()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop background polling, then poll until every job finished."""
        if self.poller is None:
            return
        self.poller.stop()
        self.poller.drain(timeout)
