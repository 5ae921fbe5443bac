"""
Unit tests for bq_ingest/formatter.py
"""
import json
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from bq_ingest.formatter import RecordFormatter
from bq_ingest.schema import RecordSchema, schema_from_fields

NOW = datetime(2024, 3, 5, 12, 0, 0, tzinfo=timezone.utc)


class TestRecordFormatter(unittest.TestCase):
    def setUp(self):
        self.schema = schema_from_fields(
            [
                {"name": "time", "type": "TIMESTAMP"},
                {"name": "tag", "type": "STRING"},
                {"name": "status", "type": "INTEGER"},
                {"name": "payload", "type": "JSON"},
            ]
        )

    def test_format_injects_time_and_tag(self):
        formatter = RecordFormatter(self.schema, time_field="time", tag_field="tag")
        row = formatter.format("app.access", NOW, {"status": "200"})
        self.assertEqual(
            row,
            {"status": 200, "time": "2024-03-05 12:00:00.000000+00:00", "tag": "app.access"},
        )

    def test_epoch_time(self):
        formatter = RecordFormatter(self.schema, time_field="time")
        row = formatter.format("t", NOW.timestamp(), {})
        self.assertEqual(row["time"], "2024-03-05 12:00:00.000000+00:00")

    def test_time_format(self):
        formatter = RecordFormatter(RecordSchema(), time_field="date", time_format="%Y-%m-%d")
        self.assertEqual(formatter.format("t", NOW, {"a": 1}), {"a": 1, "date": "2024-03-05"})

    def test_input_is_not_modified(self):
        record = {"status": "1"}
        RecordFormatter(self.schema, time_field="time", tag_field="tag").format("t", NOW, record)
        self.assertEqual(record, {"status": "1"})

    def test_rewrite_keys(self):
        formatter = RecordFormatter(
            RecordSchema(),
            replace_record_key=True,
            key_replacements=[("-", "_"), (r"^@", "at_")],
        )
        row = formatter.format(
            "t", NOW, {"@referer": "http://referer.example", "login-session": False, "vhost.name": "bar"}
        )
        self.assertEqual(row, {"at_referer": "http://referer.example", "login_session": False, "vhostname": "bar"})

    def test_strip_without_rules(self):
        formatter = RecordFormatter(RecordSchema(), replace_record_key=True)
        self.assertEqual(formatter.format("t", NOW, {"@referer": 1, "a b": 2}), {"referer": 1, "ab": 2})

    def test_none_record(self):
        formatter = RecordFormatter(self.schema)
        with self.assertLogs("bq_ingest.formatter", level="WARNING"):
            self.assertIsNone(formatter.format("t", NOW, None))

    def test_empty_row(self):
        formatter = RecordFormatter(self.schema)
        self.assertIsNone(formatter.format("t", NOW, {"status": None}))
        self.assertIsNone(formatter.format_line("t", NOW, {}))

    def test_format_error_is_logged_and_raised(self):
        formatter = RecordFormatter(self.schema)
        with self.assertLogs("bq_ingest.formatter", level="ERROR") as logs:
            with self.assertRaises(ValueError):
                formatter.format("t", NOW, {"status": "not a number"})
        self.assertIn("not a number", logs.output[0])

    def test_schema_provider_is_resolved_per_call(self):
        provider = MagicMock(return_value=self.schema)
        formatter = RecordFormatter(provider)
        formatter.format("t", NOW, {"status": "1"})
        provider.return_value = RecordSchema()
        self.assertEqual(formatter.format("t", NOW, {"status": "1"}), {"status": "1"})
        self.assertEqual(provider.call_count, 2)

    def test_load_and_insert_json(self):
        record = {"payload": {"k": [1, 2]}}
        self.assertEqual(RecordFormatter(self.schema, is_load=True).format("t", NOW, record), record)
        self.assertEqual(
            RecordFormatter(self.schema).format("t", NOW, record),
            {"payload": '{"k":[1,2]}'},
        )

    def test_format_line(self):
        formatter = RecordFormatter(self.schema, tag_field="tag")
        line = formatter.format_line("ログ", NOW, {"status": 1})
        self.assertTrue(line.endswith(b"\n"))
        self.assertIn("ログ".encode("utf-8"), line)
        self.assertEqual(json.loads(line), {"status": 1, "tag": "ログ"})

    def test_csv_line_follows_schema_order(self):
        formatter = RecordFormatter(self.schema, tag_field="tag", is_load=True, line_format="csv")
        line = formatter.format_line("app, access", NOW, {"payload": {"k": 1}, "status": "7", "extra": 1})
        self.assertEqual(line, b',"app, access",7,"{""k"":1}"\n')

    def test_csv_line_with_time(self):
        formatter = RecordFormatter(self.schema, time_field="time", is_load=True, line_format="csv")
        self.assertEqual(
            formatter.format_line("t", NOW, {"status": 1}),
            b"2024-03-05 12:00:00.000000+00:00,,1,\n",
        )

    def test_csv_needs_schema(self):
        formatter = RecordFormatter(RecordSchema(), line_format="csv")
        with self.assertRaises(ValueError):
            formatter.format_line("t", NOW, {"a": 1})
        with self.assertRaises(ValueError):
            RecordFormatter(RecordSchema(), line_format="avro")


if __name__ == "__main__":
    unittest.main()
