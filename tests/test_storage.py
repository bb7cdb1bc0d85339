"""Unit tests for the GCS JSON helpers (bucket mocked)."""
import hashlib
import json

import pytest
from unittest.mock import MagicMock, patch

from app.utils.storage import ArchiveStorage, download_json, upload_json


@pytest.fixture
def bucket():
    bucket = MagicMock()
    bucket.name = "mio-archives"
    blobs = {}

    def blob(path):
        if path not in blobs:
            blobs[path] = MagicMock(metadata=None)
        return blobs[path]

    bucket.blob.side_effect = blob
    with patch("app.utils.storage.get_bucket", return_value=bucket):
        yield bucket


class TestJsonBlobs:
    def test_upload_sets_content_type_and_checksum(self, bucket):
        uri = upload_json("archives/c1/x.json", [{"id": "m1"}], {"count": 1})

        blob = bucket.blob("archives/c1/x.json")
        body = blob.upload_from_string.call_args.args[0]
        assert uri == "gs://mio-archives/archives/c1/x.json"
        assert blob.upload_from_string.call_args.kwargs["content_type"] == "application/json"
        assert json.loads(body) == [{"id": "m1"}]
        assert blob.metadata["count"] == "1"
        assert blob.metadata["sha256"] == hashlib.sha256(body).hexdigest()

    def test_download_verifies_checksum(self, bucket):
        body = json.dumps([{"id": "m1"}]).encode()
        blob = bucket.blob("a.json")
        blob.download_as_bytes.return_value = body
        blob.metadata = {"sha256": hashlib.sha256(body).hexdigest()}
        assert download_json("a.json") == [{"id": "m1"}]

        blob.metadata = {"sha256": "0" * 64}
        with pytest.raises(ValueError):
            download_json("a.json")

    @pytest.mark.asyncio
    async def test_async_facade(self, bucket):
        body = json.dumps({"batches": []}).encode()
        bucket.blob("b.json").download_as_bytes.return_value = body
        assert await ArchiveStorage().download_json("b.json") == {"batches": []}
