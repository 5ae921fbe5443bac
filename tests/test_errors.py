"""
Unit tests for bq_ingest/errors.py
"""
import unittest

from google.api_core import exceptions as api_exceptions
from google.auth import exceptions as auth_exceptions

from bq_ingest.errors import (
    RetryableError,
    TableCreatedError,
    UnRetryableError,
    any_retryable_insert_error,
    error_reason,
    is_auth_error,
    is_retryable_error,
    is_retryable_insert_reason,
    is_retryable_reason,
    status_code_of,
    wrap,
)
from bq_ingest.writer import RowError


class TestReasons(unittest.TestCase):
    def test_retryable_reasons(self):
        for reason in ("backendError", "internalError", "rateLimitExceeded", "quotaExceeded", "timeout"):
            self.assertTrue(is_retryable_reason(reason), reason)

    def test_unretryable_reasons(self):
        for reason in ("invalid", "notFound", "duplicate", None):
            self.assertFalse(is_retryable_reason(reason), reason)

    def test_insert_reasons(self):
        self.assertTrue(is_retryable_insert_reason("backendError"))
        self.assertTrue(is_retryable_insert_reason("quotaExceeded"))
        self.assertTrue(is_retryable_insert_reason("tableUnavailable"))
        self.assertFalse(is_retryable_insert_reason("stopped"))


class TestClassification(unittest.TestCase):
    def test_reason_and_status_of_api_error(self):
        error = api_exceptions.BadRequest("bad", errors=[{"reason": "invalid", "message": "bad"}])
        self.assertEqual(error_reason(error), "invalid")
        self.assertEqual(status_code_of(error), 400)

    def test_retryable_reason_wins_over_status(self):
        error = api_exceptions.Forbidden("quota", errors=[{"reason": "rateLimitExceeded"}])
        self.assertTrue(is_retryable_error(error))

    def test_server_errors(self):
        self.assertTrue(is_retryable_error(api_exceptions.InternalServerError("boom")))
        self.assertTrue(is_retryable_error(api_exceptions.ServiceUnavailable("down")))
        self.assertFalse(is_retryable_error(api_exceptions.MethodNotImplemented("nope")))

    def test_region_not_writable(self):
        error = api_exceptions.BadRequest("Dataset d is not writable in the region us-east1")
        self.assertTrue(is_retryable_error(error))

    def test_client_error(self):
        self.assertFalse(is_retryable_error(api_exceptions.NotFound("Not found: Dataset")))

    def test_wrap(self):
        retryable = wrap(api_exceptions.ServiceUnavailable("down"))
        self.assertIsInstance(retryable, RetryableError)
        self.assertTrue(retryable.retryable)
        self.assertEqual(retryable.status_code, 503)

        origin = api_exceptions.BadRequest("bad", errors=[{"reason": "invalid"}])
        unretryable = wrap(origin, "cannot insert")
        self.assertIsInstance(unretryable, UnRetryableError)
        self.assertFalse(unretryable.retryable)
        self.assertIs(unretryable.origin, origin)
        self.assertEqual(unretryable.reason, "invalid")
        self.assertEqual(str(unretryable), "cannot insert")

    def test_wrap_keeps_classified_errors(self):
        error = TableCreatedError("table created")
        self.assertIs(wrap(error), error)
        self.assertTrue(error.retryable)

    def test_auth_errors(self):
        self.assertTrue(is_auth_error(api_exceptions.Unauthorized("expired")))
        self.assertTrue(is_auth_error(api_exceptions.Forbidden("denied")))
        self.assertTrue(is_auth_error(auth_exceptions.RefreshError("refresh")))
        self.assertFalse(is_auth_error(api_exceptions.NotFound("gone")))

    def test_any_retryable_insert_error(self):
        rows = [
            RowError(0, [{"reason": "invalid"}]),
            RowError(1, [{"reason": "stopped"}, {"reason": "timeout"}]),
        ]
        self.assertTrue(any_retryable_insert_error(rows))
        self.assertFalse(any_retryable_insert_error(rows[:1]))
        self.assertFalse(any_retryable_insert_error([]))


if __name__ == "__main__":
    unittest.main()
