import asyncio
import hashlib
import json
from typing import Any, Optional

from google.cloud import storage as gcs_storage

from app.config import get_settings


def get_storage_client():
    return gcs_storage.Client(project=get_settings().GCP_PROJECT_ID)


def get_bucket():
    client = get_storage_client()
    return client.bucket(get_settings().GCS_BUCKET_NAME)


def upload_json(path: str, payload: Any, metadata: Optional[dict[str, Any]] = None) -> str:
    """Upload a JSON document to the GCS bucket. Returns the GCS URI.

    The SHA256 of the body is stored in the blob metadata next to
    ``metadata`` so downloads can be verified.
    """
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    bucket = get_bucket()
    blob = bucket.blob(path)
    blob.metadata = {
        **{k: str(v) for k, v in (metadata or {}).items()},
        "sha256": hashlib.sha256(body).hexdigest(),
    }
    blob.upload_from_string(body, content_type="application/json")
    return f"gs://{bucket.name}/{path}"


def download_json(path: str) -> Any:
    """Download a JSON document from GCS and verify its SHA256 if recorded."""
    bucket = get_bucket()
    blob = bucket.blob(path)
    blob.reload()
    data = blob.download_as_bytes()

    expected = (blob.metadata or {}).get("sha256")
    actual = hashlib.sha256(data).hexdigest()
    if expected and actual != expected:
        raise ValueError(f"SHA256 mismatch for {path}: expected {expected}, got {actual}")

    return json.loads(data)


class ArchiveStorage:
    """Async facade over the blocking GCS client calls above."""

    async def upload_json(
        self, path: str, payload: Any, metadata: Optional[dict[str, Any]] = None
    ) -> str:
        return await asyncio.to_thread(upload_json, path, payload, metadata)

    async def download_json(self, path: str) -> Any:
        return await asyncio.to_thread(download_json, path)
