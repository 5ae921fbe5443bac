"""
Unit tests for bq_ingest/upload.py
"""
import io
import json
import os
import tempfile
import unittest

from bq_ingest.tables import TableRef
from bq_ingest.upload import LoadRequestBody

TABLE = TableRef("yourproject_id", "yourdataset_id", "foo")
FIELDS = [
    {"name": "time", "type": "TIMESTAMP", "mode": "REQUIRED"},
    {"name": "vhost", "type": "STRING", "mode": "NULLABLE"},
]
ASCII_PAYLOAD = b'{"time":1,"vhost":"a"}\n{"time":2,"vhost":"b"}\n'
KANA_PAYLOAD = '{"vhost":"こんにちは"}\n{"vhost":"さようなら"}\n'.encode("utf-8")


class ForwardOnlyStream:
    """Binary stream that can be read once and cannot seek."""

    def __init__(self, data: bytes):
        self._data = data
        self.reads = 0

    def read(self, size=-1):
        self.reads += 1
        data, self._data = self._data, b""
        return data


def read_in_chunks(body, size):
    parts = []
    while not body.eof:
        parts.append(body.read(size))
    return b"".join(parts)


class TestLoadRequestBodyLayout(unittest.TestCase):
    def test_body_layout(self):
        body = LoadRequestBody(TABLE, FIELDS, ASCII_PAYLOAD)
        metadata = {
            "configuration": {
                "load": {
                    "sourceFormat": "NEWLINE_DELIMITED_JSON",
                    "schema": {"fields": FIELDS},
                    "destinationTable": {
                        "projectId": "yourproject_id",
                        "datasetId": "yourdataset_id",
                        "tableId": "foo",
                    },
                }
            }
        }
        expected = (
            b"--xxx\n"
            b"Content-Type: application/json; charset=UTF-8\n\n"
            + json.dumps(metadata, indent=2).encode("utf-8")
            + b"\n--xxx\n"
            b"Content-Type: application/octet-stream\n\n"
            + ASCII_PAYLOAD
            + b"--xxx--\n"
        )
        self.assertEqual(body.read(), expected)
        self.assertEqual(len(body), len(expected))
        self.assertEqual(LoadRequestBody.CONTENT_TYPE, "multipart/related; boundary=xxx")

    def test_schema_omitted(self):
        body = LoadRequestBody(TABLE, None, ASCII_PAYLOAD)
        self.assertNotIn("schema", body.metadata["configuration"]["load"])
        self.assertNotIn(b'"schema"', body.to_bytes())

    def test_load_options_and_job_reference(self):
        body = LoadRequestBody(
            TABLE,
            FIELDS,
            ASCII_PAYLOAD,
            source_format="CSV",
            load_options={"writeDisposition": "WRITE_APPEND", "maxBadRecords": 3},
            job_reference={"projectId": "yourproject_id", "jobId": "job_1"},
        )
        load = body.metadata["configuration"]["load"]
        self.assertEqual(load["sourceFormat"], "CSV")
        self.assertEqual(load["writeDisposition"], "WRITE_APPEND")
        self.assertEqual(load["maxBadRecords"], 3)
        self.assertEqual(body.metadata["jobReference"]["jobId"], "job_1")


class TestLoadRequestBodyReads(unittest.TestCase):
    def test_bounded_reads_match_full_read(self):
        for payload in (ASCII_PAYLOAD, KANA_PAYLOAD):
            full = LoadRequestBody(TABLE, FIELDS, payload).read()
            for size in (1, 2, 3, 7, 64, 300, 4096):
                with self.subTest(payload=payload[:10], size=size):
                    body = LoadRequestBody(TABLE, FIELDS, payload)
                    self.assertEqual(read_in_chunks(body, size), full)

    def test_multibyte_payload_is_byte_exact(self):
        body = LoadRequestBody(TABLE, FIELDS, KANA_PAYLOAD)
        data = body.read()
        self.assertIn(KANA_PAYLOAD + b"--xxx--\n", data)
        self.assertTrue(data.endswith(b"--xxx--\n"))

    def test_rewind_reproduces_output(self):
        body = LoadRequestBody(TABLE, FIELDS, KANA_PAYLOAD)
        first = read_in_chunks(body, 5)
        self.assertTrue(body.eof)
        body.rewind()
        self.assertFalse(body.eof)
        self.assertEqual(body.tell(), 0)
        self.assertEqual(body.read(), first)

    def test_read_zero_keeps_cursor(self):
        body = LoadRequestBody(TABLE, FIELDS, ASCII_PAYLOAD)
        body.read(10)
        self.assertEqual(body.read(0), b"")
        self.assertEqual(body.tell(), 10)
        self.assertFalse(body.eof)

    def test_read_past_end(self):
        body = LoadRequestBody(TABLE, FIELDS, ASCII_PAYLOAD)
        body.read(None)
        self.assertTrue(body.eof)
        self.assertEqual(body.read(), b"")
        self.assertEqual(body.read(10), b"")

    def test_exact_length_read_sets_eof(self):
        body = LoadRequestBody(TABLE, FIELDS, ASCII_PAYLOAD)
        data = body.read(len(body))
        self.assertEqual(len(data), len(body))
        self.assertTrue(body.eof)

    def test_readinto(self):
        body = LoadRequestBody(TABLE, FIELDS, ASCII_PAYLOAD)
        buffer = bytearray(16)
        count = body.readinto(buffer)
        self.assertEqual(count, 16)
        self.assertEqual(bytes(buffer), b"--xxx\nContent-Ty")

    def test_seek(self):
        body = LoadRequestBody(TABLE, FIELDS, ASCII_PAYLOAD)
        full = body.to_bytes()
        body.seek(-8, io.SEEK_END)
        self.assertEqual(body.read(), b"--xxx--\n")
        body.seek(2)
        body.seek(3, io.SEEK_CUR)
        self.assertEqual(body.read(4), full[5:9])


class TestLoadRequestBodySources(unittest.TestCase):
    def test_real_file_payload(self):
        with tempfile.TemporaryFile() as f:
            f.write(KANA_PAYLOAD)
            f.seek(0)
            body = LoadRequestBody(TABLE, FIELDS, f)
            expected = LoadRequestBody(TABLE, FIELDS, KANA_PAYLOAD).read()
            self.assertEqual(len(body), len(expected))
            self.assertEqual(read_in_chunks(body, 11), expected)

    def test_seekable_stream_payload(self):
        body = LoadRequestBody(TABLE, FIELDS, io.BytesIO(ASCII_PAYLOAD))
        expected = LoadRequestBody(TABLE, FIELDS, ASCII_PAYLOAD).read()
        self.assertEqual(len(body), len(expected))
        self.assertEqual(body.read(), expected)

    def test_forward_only_payload_is_read_once(self):
        stream = ForwardOnlyStream(ASCII_PAYLOAD)
        body = LoadRequestBody(TABLE, FIELDS, stream)
        first = read_in_chunks(body, 3)
        body.rewind()
        second = body.read()
        self.assertEqual(first, second)
        self.assertEqual(stream.reads, 1)
        self.assertTrue(first.endswith(ASCII_PAYLOAD + b"--xxx--\n"))

    def test_pipe_payload(self):
        read_fd, write_fd = os.pipe()
        os.write(write_fd, ASCII_PAYLOAD)
        os.close(write_fd)
        with open(read_fd, "rb") as stream:
            body = LoadRequestBody(TABLE, FIELDS, stream)
            expected = LoadRequestBody(TABLE, FIELDS, ASCII_PAYLOAD).read()
            self.assertEqual(len(body), len(expected))
            self.assertEqual(read_in_chunks(body, 7), expected)
            body.rewind()
            self.assertEqual(body.read(), expected)


if __name__ == "__main__":
    unittest.main()
