"""
BigQuery Writer
---------------
The only component with network side effects. Talks to the BigQuery v2
REST API with ``requests``:

- tables.insert / tables.get for table creation and live schemas
- tabledata.insertAll for streaming inserts
- jobs.insert (multipart upload) / jobs.get for load jobs

HTTP failures are turned into ``google.api_core.exceptions`` errors and then
classified into ``RetryableError`` / ``UnRetryableError``. Retry timing is
left to the caller, except for the small retry loop of ``create_table``.
"""

import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Union

import requests
from google.api_core import exceptions as api_exceptions
from google.auth import exceptions as auth_exceptions

from bq_ingest.auth import Authenticator
from bq_ingest.errors import (
    RetryableError,
    TableCreatedError,
    UnRetryableError,
    any_retryable_insert_error,
    error_reason,
    is_auth_error,
    is_retryable_reason,
    status_code_of,
    wrap,
)
from bq_ingest.schema import RecordSchema
from bq_ingest.tables import TableRef
from bq_ingest.upload import LoadRequestBody

logger = logging.getLogger(__name__)

API_ROOT = "https://bigquery.googleapis.com/bigquery/v2"
UPLOAD_ROOT = "https://bigquery.googleapis.com/upload/bigquery/v2"
CLIENT_CACHE_SECONDS = 1800
CREATE_TABLE_RETRY_LIMIT = 3
CREATE_TABLE_RETRY_WAIT = 1
DEFAULT_WAIT_JOB_INTERVAL = 10
JOB_ID_PREFIX = "bqingest_job_"

ALREADY_EXISTS_PATTERN = re.compile(r"Already Exists:")
TABLE_NOT_FOUND_PATTERN = re.compile(r"Not found: Table", re.IGNORECASE)
DUPLICATE_JOB_PATTERN = re.compile(r"Job")

API_ERRORS = (api_exceptions.GoogleAPICallError, auth_exceptions.GoogleAuthError)


@dataclass
class WriterOptions:
    """Per-output knobs of the writer."""

    location: Optional[str] = None
    skip_invalid_rows: bool = False
    ignore_unknown_values: bool = False
    max_bad_records: int = 0
    source_format: str = "NEWLINE_DELIMITED_JSON"
    allow_retry_insert_errors: bool = False
    strict_insert_errors: bool = False
    auto_create_table: bool = False
    time_partitioning_type: Optional[str] = None
    time_partitioning_field: Optional[str] = None
    time_partitioning_expiration: Optional[float] = None
    require_partition_filter: bool = False
    clustering_fields: Optional[List[str]] = None
    timeout_sec: Optional[float] = None
    open_timeout_sec: Optional[float] = 60
    wait_job_interval: float = DEFAULT_WAIT_JOB_INTERVAL


@dataclass
class RowError:
    """Per-row error of an insertAll response."""

    index: int
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def reasons(self) -> List[Optional[str]]:
        return [error.get("reason") for error in self.errors]


@dataclass
class InsertResult:
    """Outcome of one insertAll call."""

    row_count: int
    insert_errors: List[RowError] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.insert_errors


@dataclass(frozen=True)
class JobReference:
    """Handle of a submitted load job."""

    project: str
    job_id: str
    location: Optional[str] = None
    table: Optional[TableRef] = None
    chunk_id: Optional[bytes] = None

    @property
    def chunk_id_hex(self) -> Optional[str]:
        return self.chunk_id.hex() if self.chunk_id is not None else None


@dataclass
class JobStatus:
    """State of a load job as reported by jobs.get."""

    state: str
    error_result: Optional[Dict[str, Any]] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def done(self) -> bool:
        return self.state == "DONE"

    @classmethod
    def from_api_repr(cls, resource: Dict[str, Any]) -> "JobStatus":
        status = resource.get("status", {})
        return cls(
            state=status.get("state", "PENDING"),
            error_result=status.get("errorResult"),
            errors=status.get("errors") or [],
        )


def create_job_id(
    chunk_id: bytes,
    table_ref: TableRef,
    schema: Optional[RecordSchema],
    options: WriterOptions,
) -> str:
    """
    Deterministic job id for a chunk, so that resubmitting the same payload
    to the same destination hits the existing job instead of loading twice.
    """
    fields = schema.to_list() if schema is not None else []
    seed = "".join(
        [
            chunk_id.hex(),
            table_ref.key,
            repr(fields),
            str(options.max_bad_records),
            str(options.ignore_unknown_values),
            options.source_format,
        ]
    )
    return JOB_ID_PREFIX + hashlib.sha1(seed.encode("utf-8")).hexdigest()


class BigQueryWriter:
    """
    Issues BigQuery API calls for one output.

    Args:
        authenticator: Source of bearer tokens.
        options: Insert / load / table creation options.
        session_factory: Creates the HTTP session; replaced in tests.
        sleep: Used by ``create_table`` retries and ``await_job``.
        clock: Monotonic clock for the session cache.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        options: Optional[WriterOptions] = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.authenticator = authenticator
        self.options = options or WriterOptions()
        self._session_factory = session_factory
        self._sleep = sleep
        self._clock = clock
        self._session: Optional[requests.Session] = None
        self._session_expiration = 0.0

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    @property
    def session(self) -> requests.Session:
        now = self._clock()
        if self._session is None or self._session_expiration <= now:
            session = self._session_factory()
            session.headers["Authorization"] = f"Bearer {self.authenticator.get_credential()}"
            self._session = session
            self._session_expiration = now + CLIENT_CACHE_SECONDS
        return self._session

    def reset_session(self, error: Optional[BaseException] = None) -> None:
        """Drop the cached session; credentials too after an auth failure."""
        if self._session is not None:
            self._session.close()
        self._session = None
        if error is not None and is_auth_error(error):
            self.authenticator.invalidate()

    def _timeout(self) -> Any:
        if self.options.timeout_sec is None and self.options.open_timeout_sec is None:
            return None
        return (self.options.open_timeout_sec, self.options.timeout_sec)

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self.session.request(method, url, timeout=self._timeout(), **kwargs)
        except requests.RequestException as e:
            self.reset_session()
            raise RetryableError(f"{method} {url} failed: {e}", e) from e
        if response.status_code >= 400:
            raise api_exceptions.from_http_response(response)
        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _table_url(table_ref: TableRef) -> str:
        return f"{API_ROOT}/{table_ref.path}"

    def _log_api_error(self, api: str, table_ref: TableRef, error: BaseException) -> None:
        logger.error(
            f"{api} API failed for {table_ref}: code={status_code_of(error)} "
            f"reason={error_reason(error)} message={error}"
        )

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def table_definition(self, table_ref: TableRef, schema: RecordSchema) -> Dict[str, Any]:
        definition: Dict[str, Any] = {
            "tableReference": {"tableId": table_ref.table},
            "schema": {"fields": schema.to_list()},
        }
        options = self.options
        if options.time_partitioning_type:
            partitioning: Dict[str, Any] = {"type": options.time_partitioning_type.upper()}
            if options.time_partitioning_field:
                partitioning["field"] = options.time_partitioning_field
            if options.time_partitioning_expiration:
                partitioning["expirationMs"] = str(int(options.time_partitioning_expiration * 1000))
            definition["timePartitioning"] = partitioning
            if options.require_partition_filter:
                definition["requirePartitionFilter"] = True
        if options.clustering_fields:
            definition["clustering"] = {"fields": list(options.clustering_fields)}
        return definition

    def create_table(self, table_ref: TableRef, schema: RecordSchema) -> None:
        """
        Create ``table_ref``. A table that already exists counts as created.

        Raises:
            UnRetryableError: Creation failed, after up to three retries for
                transient reasons.
        """
        url = f"{API_ROOT}/projects/{table_ref.project}/datasets/{table_ref.dataset}/tables"
        body = self.table_definition(table_ref, schema)
        retry_count = 0
        retry_wait = CREATE_TABLE_RETRY_WAIT

        while True:
            try:
                self._request("POST", url, json=body)
                logger.debug(f"Created table {table_ref}")
                return
            except API_ERRORS as e:
                self.reset_session(e)
                if isinstance(e, api_exceptions.Conflict) and ALREADY_EXISTS_PATTERN.search(str(e)):
                    logger.debug(f"Table {table_ref} already exists")
                    return

                self._log_api_error("tables.insert", table_ref, e)
                if is_retryable_reason(error_reason(e)) and retry_count < CREATE_TABLE_RETRY_LIMIT:
                    self._sleep(retry_wait)
                    retry_wait *= 2
                    retry_count += 1
                    continue
                raise UnRetryableError("failed to create table in bigquery", e) from e

    def get_table(self, table_ref: TableRef) -> Dict[str, Any]:
        """Return the table resource; API errors propagate."""
        return self._request("GET", self._table_url(table_ref))

    def fetch_schema(self, table_ref: TableRef) -> Optional[List[Dict[str, Any]]]:
        """Return the live ``schema.fields`` of a table, or None on any API error."""
        try:
            resource = self.get_table(table_ref)
        except API_ERRORS + (RetryableError,) as e:
            self.reset_session(e)
            self._log_api_error("tables.get", table_ref, e)
            return None
        fields = resource.get("schema", {}).get("fields", [])
        logger.debug(f"Loaded schema from BigQuery: {table_ref} {fields}")
        return fields

    # ------------------------------------------------------------------
    # Streaming insert
    # ------------------------------------------------------------------

    def insert_rows(
        self,
        table_ref: TableRef,
        rows: List[Dict[str, Any]],
        template_suffix: Optional[str] = None,
        schema: Optional[RecordSchema] = None,
    ) -> InsertResult:
        """
        Stream ``rows`` (``[{"json": row, "insertId"?: id}]``) into a table.

        Per-row errors are returned in the result. They are raised only when
        ``allow_retry_insert_errors`` is set: as ``RetryableError`` when a
        reason is transient or rows carry no insertId, else as
        ``UnRetryableError``.
        """
        body: Dict[str, Any] = {
            "rows": rows,
            "skipInvalidRows": self.options.skip_invalid_rows,
            "ignoreUnknownValues": self.options.ignore_unknown_values,
        }
        if template_suffix:
            body["templateSuffix"] = template_suffix

        try:
            response = self._request("POST", f"{self._table_url(table_ref)}/insertAll", json=body)
        except API_ERRORS as e:
            self.reset_session(e)
            self._log_api_error("tabledata.insertAll", table_ref, e)
            if (
                self.options.auto_create_table
                and schema is not None
                and isinstance(e, api_exceptions.NotFound)
                and TABLE_NOT_FOUND_PATTERN.search(str(e))
            ):
                # templateSuffix tables are created by BigQuery from the base table
                self.create_table(table_ref, schema)
                raise TableCreatedError("table created. send rows next time.", e) from e
            raise wrap(e) from e

        logger.debug(f"Inserted {len(rows)} rows into {table_ref}")
        result = InsertResult(
            row_count=len(rows),
            insert_errors=[
                RowError(index=item.get("index", 0), errors=item.get("errors") or [])
                for item in response.get("insertErrors") or []
            ],
        )
        if result.insert_errors:
            self._handle_insert_errors(table_ref, result)
        return result

    def _handle_insert_errors(self, table_ref: TableRef, result: InsertResult) -> None:
        logger.warning(
            f"insert errors for {table_ref}: "
            f"{[(e.index, e.errors) for e in result.insert_errors]}"
        )
        if not self.options.allow_retry_insert_errors:
            return
        if not self.options.strict_insert_errors:
            raise RetryableError("failed to insert into bigquery(insert errors), retry")
        if any_retryable_insert_error(result.insert_errors):
            raise RetryableError("failed to insert into bigquery(insert errors), retry")
        raise UnRetryableError("failed to insert into bigquery(insert errors), and cannot retry")

    # ------------------------------------------------------------------
    # Load jobs
    # ------------------------------------------------------------------

    def load_options(self) -> Dict[str, Any]:
        return {
            "writeDisposition": "WRITE_APPEND",
            "ignoreUnknownValues": self.options.ignore_unknown_values,
            "maxBadRecords": self.options.max_bad_records,
        }

    def submit_load_job(
        self,
        table_ref: TableRef,
        upload_source: Union[bytes, BinaryIO],
        schema: RecordSchema,
        job_id: Optional[str] = None,
        chunk_id: Optional[bytes] = None,
    ) -> JobReference:
        """
        Upload ``upload_source`` as a load job into ``table_ref``.

        The schema is sent only when the destination does not exist yet.
        With a ``job_id``, a conflict with an earlier job of the same id
        returns that job's reference for polling.

        Raises:
            TableCreatedError: The table was missing and has been created.
            RetryableError / UnRetryableError: Submission failed.
        """
        fields: Optional[List[Dict[str, Any]]] = schema.to_list()
        try:
            self.get_table(table_ref)
            fields = None
        except API_ERRORS + (RetryableError,) as e:
            self.reset_session(e)
            if schema.empty:
                raise UnRetryableError("Schema is empty", e) from e

        job_reference = None
        if job_id:
            job_reference = {"projectId": table_ref.project, "jobId": job_id}
            if self.options.location:
                job_reference["location"] = self.options.location
        body = LoadRequestBody(
            table_ref,
            fields,
            upload_source,
            source_format=self.options.source_format,
            load_options=self.load_options(),
            job_reference=job_reference,
        )

        try:
            response = self._request(
                "POST",
                f"{UPLOAD_ROOT}/projects/{table_ref.project}/jobs",
                params={"uploadType": "multipart"},
                data=body,
                headers={"Content-Type": LoadRequestBody.CONTENT_TYPE},
            )
        except API_ERRORS as e:
            self.reset_session(e)
            self._log_api_error("jobs.insert", table_ref, e)

            if job_id and isinstance(e, api_exceptions.Conflict) and DUPLICATE_JOB_PATTERN.search(str(e)):
                logger.info(f"Load job {job_id} already exists, polling it instead")
                return JobReference(table_ref.project, job_id, self.options.location, table_ref, chunk_id)

            if (
                self.options.auto_create_table
                and isinstance(e, api_exceptions.NotFound)
                and TABLE_NOT_FOUND_PATTERN.search(str(e))
            ):
                self.create_table(table_ref, schema)
                raise TableCreatedError("table created. send payload next time.", e) from e

            if isinstance(e, api_exceptions.ServerError) or is_retryable_reason(error_reason(e)):
                raise RetryableError(None, e) from e
            raise UnRetryableError(None, e) from e

        reference = response.get("jobReference", {})
        job_ref = JobReference(
            project=reference.get("projectId", table_ref.project),
            job_id=reference.get("jobId", job_id),
            location=reference.get("location", self.options.location),
            table=table_ref,
            chunk_id=chunk_id,
        )
        logger.debug(f"Submitted load job {job_ref.job_id} for chunk {job_ref.chunk_id_hex} into {table_ref}")
        return job_ref

    def poll_job(self, job_ref: JobReference) -> JobStatus:
        """Fetch the job state once. Does not wait."""
        params = {"location": job_ref.location} if job_ref.location else None
        try:
            resource = self._request(
                "GET",
                f"{API_ROOT}/projects/{job_ref.project}/jobs/{job_ref.job_id}",
                params=params,
            )
        except API_ERRORS as e:
            self.reset_session(e)
            logger.error(
                f"jobs.get API failed for {job_ref.job_id}: code={status_code_of(e)} "
                f"reason={error_reason(e)} message={e}"
            )
            raise wrap(e) from e
        status = JobStatus.from_api_repr(resource)
        logger.debug(f"Load job {job_ref.job_id} state={status.state}")
        return status

    def check_job_result(self, job_ref: JobReference, status: JobStatus) -> None:
        """
        Raise if a finished job failed.

        Raises:
            RetryableError: ``errorResult`` carries a transient reason.
            UnRetryableError: Any other ``errorResult``.
        """
        for error in status.errors:
            logger.error(
                f"job.insert API (rows) job_id={job_ref.job_id} table={job_ref.table} "
                f"message={error.get('message')} reason={error.get('reason')}"
            )

        error_result = status.error_result
        if not error_result:
            logger.debug(f"Finished load job {job_ref.job_id} state={status.state}")
            return

        reason = error_result.get("reason")
        logger.error(
            f"job.insert API (result) job_id={job_ref.job_id} table={job_ref.table} "
            f"message={error_result.get('message')} reason={reason}"
        )
        if is_retryable_reason(reason):
            raise RetryableError("failed to load into bigquery, retry")
        raise UnRetryableError("failed to load into bigquery, and cannot retry")

    def await_job(self, job_ref: JobReference, interval: Optional[float] = None) -> JobStatus:
        """Poll until the job is DONE, then check its result."""
        interval = self.options.wait_job_interval if interval is None else interval
        status = self.poll_job(job_ref)
        while not status.done:
            logger.debug(f"Waiting for load job {job_ref.job_id} state={status.state}")
            self._sleep(interval)
            status = self.poll_job(job_ref)
        self.check_job_result(job_ref, status)
        return status
