"""
Unit tests for bq_ingest/config.py
"""
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from bq_ingest.config import (
    InsertOutputConfig,
    LoadOutputConfig,
    config_from_dict,
    load_config,
    read_schema_file,
)
from bq_ingest.errors import ConfigurationError
from bq_ingest.schema import FieldType

BASE = {"project": "yourproject_id", "dataset": "yourdataset_id", "table": "foo"}


class TestConfigFromDict(unittest.TestCase):
    def test_insert_defaults(self):
        config = config_from_dict(dict(BASE))
        self.assertIsInstance(config, InsertOutputConfig)
        self.assertEqual(config.auth_method, "application_default")
        self.assertEqual(config.table_names, ["foo"])
        self.assertEqual(config.schema_cache_expire, 600)
        self.assertEqual(config.request_open_timeout_sec, 60)

    def test_load_config(self):
        config = config_from_dict(
            {**BASE, "method": "load", "source_format": "csv", "max_bad_records": 3, "field_string": "vhost"}
        )
        self.assertIsInstance(config, LoadOutputConfig)
        options = config.writer_options()
        self.assertEqual(options.source_format, "CSV")
        self.assertEqual(options.max_bad_records, 3)
        self.assertEqual(options.wait_job_interval, 10)
        self.assertTrue(config.async_job_polling)

    def test_csv_needs_a_schema(self):
        with self.assertRaises(ConfigurationError):
            config_from_dict({**BASE, "method": "load", "source_format": "csv"})
        with self.assertRaises(ConfigurationError):
            config_from_dict({**BASE, "method": "load", "source_format": "avro", "field_string": "vhost"})
        config = config_from_dict({**BASE, "method": "load", "source_format": "csv", "fetch_schema": True})
        self.assertEqual(config.line_format, "csv")
        self.assertEqual(config_from_dict(dict(BASE)).line_format, "json")

    def test_unknown_method(self):
        with self.assertRaises(ConfigurationError):
            config_from_dict({**BASE, "method": "stream"})

    def test_table_and_tables(self):
        with self.assertRaises(ConfigurationError):
            config_from_dict({**BASE, "tables": ["a", "b"]})
        with self.assertRaises(ConfigurationError):
            config_from_dict({"project": "p", "dataset": "d"})
        config = config_from_dict({"project": "p", "dataset": "d", "tables": ["a", "b"]})
        self.assertEqual(config.table_names, ["a", "b"])

    def test_json_key_required(self):
        with self.assertRaises(ConfigurationError):
            config_from_dict({**BASE, "auth_method": "json_key"})
        config = config_from_dict({**BASE, "auth_method": "json_key", "json_key": "/secrets/sa.json"})
        self.assertEqual(config.json_key, "/secrets/sa.json")

    def test_unknown_auth_method(self):
        with self.assertRaises(ConfigurationError):
            config_from_dict({**BASE, "auth_method": "private_key"})

    def test_unknown_option(self):
        with self.assertRaises(ConfigurationError):
            config_from_dict({**BASE, "tabel": "typo"})

    def test_project_from_environment(self):
        data = {"dataset": "d", "table": "t"}
        with patch.dict(os.environ, {"GCP_PROJECT_ID": "env-project"}):
            self.assertEqual(config_from_dict(data).project, "env-project")
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ConfigurationError):
                config_from_dict(data)

    def test_fetch_schema_is_exclusive(self):
        with self.assertRaises(ConfigurationError):
            config_from_dict({**BASE, "fetch_schema": True, "schema": [{"name": "a", "type": "STRING"}]})

    def test_invalid_schema_aborts(self):
        with self.assertRaises(ConfigurationError):
            config_from_dict({**BASE, "schema": [{"name": "a", "type": "BLOB"}]})
        with self.assertRaises(ConfigurationError):
            config_from_dict({**BASE, "schema": [{"name": "bad name", "type": "STRING"}]})

    def test_build_schema_with_shorthands(self):
        config = config_from_dict(
            {
                **BASE,
                "schema": [{"name": "time", "type": "TIMESTAMP"}],
                "field_integer": "time, status",
                "field_string": "request.path",
            }
        )
        schema = config.build_schema()
        self.assertEqual(schema["time"].type, FieldType.INTEGER)
        self.assertEqual(schema["status"].type, FieldType.INTEGER)
        self.assertEqual(schema["request"]["path"].type, FieldType.STRING)

    def test_shorthand_overlap_is_an_error(self):
        with self.assertRaises(ConfigurationError):
            config_from_dict({**BASE, "field_string": "a", "field_integer": "a"})

    def test_insert_writer_options(self):
        config = config_from_dict(
            {
                **BASE,
                "skip_invalid_rows": True,
                "allow_retry_insert_errors": True,
                "insert_id_field": "$.uuid",
                "time_partitioning_type": "DAY",
                "clustering_fields": ["status"],
            }
        )
        options = config.writer_options()
        self.assertTrue(options.skip_invalid_rows)
        self.assertTrue(options.allow_retry_insert_errors)
        self.assertTrue(options.strict_insert_errors)
        self.assertEqual(options.time_partitioning_type, "day")
        self.assertEqual(options.clustering_fields, ["status"])
        self.assertEqual(options.source_format, "NEWLINE_DELIMITED_JSON")

    def test_key_replacements(self):
        config = config_from_dict(
            {**BASE, "replace_record_key": True, "replace_record_key_regexp": [{"regexp": "-", "replacement": "_"}]}
        )
        self.assertEqual(config.key_replacements, [("-", "_")])


class TestConfigFiles(unittest.TestCase):
    def test_load_yaml(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "output.yaml"
            path.write_text(
                "method: load\n"
                "project: yourproject_id\n"
                "dataset: yourdataset_id\n"
                "tables: [foo, bar]\n"
                "prevent_duplicate_load: true\n"
                "schema:\n"
                "  - {name: time, type: TIMESTAMP}\n",
                encoding="utf-8",
            )
            config = load_config(path)
        self.assertIsInstance(config, LoadOutputConfig)
        self.assertTrue(config.prevent_duplicate_load)
        self.assertEqual(config.build_schema().to_list()[0]["type"], "TIMESTAMP")

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError):
            load_config("/nonexistent/output.yaml")

    def test_read_schema_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "apache.schema"
            path.write_text(json.dumps([{"name": "vhost", "type": "STRING"}]), encoding="utf-8")
            schema = read_schema_file(path)
        self.assertEqual(schema["vhost"].type, FieldType.STRING)


if __name__ == "__main__":
    unittest.main()
