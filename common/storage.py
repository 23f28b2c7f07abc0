import json
import logging
import posixpath
from pathlib import Path
from typing import Optional

import requests

# STORAGE_BACKEND determines which logic branch (local/dropbox/gcp/azure) runs.
from common.config import (
    AZURE_CONN_STR,
    AZURE_CONTAINER,
    DROPBOX_TOKEN,
    GCS_BUCKET,
    LOCAL_STORE_DIR,
    STORAGE_BACKEND,
)
from common.errors import NotFoundError, StoreError

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------------------
# CONDITIONAL IMPORTS
# Cloud SDKs are only needed by the backend that uses them; a kiosk running on
# Dropbox or local disk does not need either of them importable.
# ------------------------------------------------------------------------------

try:
    from google.cloud import storage as gcs
except ImportError:
    gcs = None

try:
    from azure.storage.blob import BlobServiceClient, ContentSettings
except ImportError:
    BlobServiceClient = None
    ContentSettings = None

BACKENDS = ("local", "dropbox", "gcp", "azure")

DROPBOX_UPLOAD_URL = "https://content.dropboxapi.com/2/files/upload"
DROPBOX_DOWNLOAD_URL = "https://content.dropboxapi.com/2/files/download"

# Collision suffix, same shape Dropbox uses for autorename: "name (1).png"
MAX_RENAME_ATTEMPTS = 1000


def _renamed(path: str, attempt: int) -> str:
    stem, ext = posixpath.splitext(path)
    return f"{stem} ({attempt}){ext}"


def _object_name(path: str) -> str:
    """Bucket/container object name for a logical "/folder/file" path."""
    return path.lstrip("/")


def _split_uri(path: str, scheme: str) -> tuple[Optional[str], str]:
    """Parse "gs://bucket/obj" (or az://). Plain paths return (None, obj)."""
    if path.startswith(scheme):
        _, _, remainder = path.partition(scheme)
        container, _, object_name = remainder.partition("/")
        return container, object_name
    return None, _object_name(path)


def _free_name(path: str, exists) -> str:
    if not exists(path):
        return path
    for attempt in range(1, MAX_RENAME_ATTEMPTS + 1):
        candidate = _renamed(path, attempt)
        if not exists(candidate):
            return candidate
    raise StoreError(f"no free name left for {path}")


# ------------------------------------------------------------------------------
# GOOGLE CLOUD STORAGE (GCS) HELPERS
# ------------------------------------------------------------------------------

def _get_gcs_client():
    """Returns an authenticated GCS client."""
    if not gcs:
        raise StoreError("google-cloud-storage library is not installed.")
    return gcs.Client()


def _ensure_bucket_exists(client, bucket_name: str):
    """Checks if bucket exists; creates it if not. Returns the Bucket object."""
    bucket = client.bucket(bucket_name)
    if not bucket.exists():
        bucket = client.create_bucket(bucket_name)
    return bucket


# ------------------------------------------------------------------------------
# AZURE BLOB STORAGE HELPERS
# ------------------------------------------------------------------------------

def _get_azure_client(conn_str: Optional[str]):
    """Creates a BlobServiceClient using the connection string."""
    if not BlobServiceClient:
        raise StoreError("azure-storage-blob library is not installed.")
    if not conn_str:
        raise StoreError("AZURE_STORAGE_CONNECTION_STRING env var is missing.")
    return BlobServiceClient.from_connection_string(conn_str)


def _ensure_container_exists(client, container_name: str):
    """Ensures the Azure container exists."""
    container_client = client.get_container_client(container_name)
    if not container_client.exists():
        container_client.create_container()
    return container_client


# ------------------------------------------------------------------------------
# PUBLIC API
# The upload handler only ever calls put() and get(); the backend is chosen once.
# ------------------------------------------------------------------------------

class BlobStore:
    """Named byte blobs addressed by hierarchical paths like "/booth_uploads/x.png".

    ``put`` never overwrites: a taken name is autorenamed and the path that was
    actually written is returned. Callers must pass pre-sanitized names.
    """

    def __init__(
        self,
        backend: str = STORAGE_BACKEND,
        local_dir: Path = LOCAL_STORE_DIR,
        gcs_bucket: Optional[str] = GCS_BUCKET,
        azure_conn_str: Optional[str] = AZURE_CONN_STR,
        azure_container: Optional[str] = AZURE_CONTAINER,
        dropbox_token: Optional[str] = DROPBOX_TOKEN,
        timeout: float = 60.0,
    ):
        if backend not in BACKENDS:
            raise RuntimeError(f"Unsupported STORAGE_BACKEND: {backend}")
        self.backend = backend
        self.local_dir = Path(local_dir)
        self.gcs_bucket = gcs_bucket
        self.azure_conn_str = azure_conn_str
        self.azure_container = azure_container
        self.dropbox_token = dropbox_token
        self.timeout = timeout

    def missing_settings(self) -> list[str]:
        """Names of env vars the selected backend needs but does not have."""
        if self.backend == "dropbox" and not self.dropbox_token:
            return ["DROPBOX_TOKEN"]
        if self.backend == "gcp" and not self.gcs_bucket:
            return ["GCS_BUCKET"]
        if self.backend == "azure":
            return [name for name, value in (
                ("AZURE_STORAGE_CONNECTION_STRING", self.azure_conn_str),
                ("AZURE_CONTAINER", self.azure_container),
            ) if not value]
        return []

    def put(self, path: str, data: bytes, content_type: str = "image/png") -> str:
        try:
            if self.backend == "local":
                stored = self._put_local(path, data)
            elif self.backend == "dropbox":
                stored = self._put_dropbox(path, data)
            elif self.backend == "gcp":
                stored = self._put_gcs(path, data, content_type)
            else:
                stored = self._put_azure(path, data, content_type)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"{self.backend} upload of {path} failed: {e}") from e
        logger.info("Stored %d bytes at %s", len(data), stored)
        return stored

    def get(self, path: str) -> bytes:
        try:
            if self.backend == "local":
                return self._get_local(path)
            if self.backend == "dropbox":
                return self._get_dropbox(path)
            if self.backend == "gcp":
                return self._get_gcs(path)
            return self._get_azure(path)
        except StoreError:
            raise
        except Exception as e:
            raise StoreError(f"{self.backend} download of {path} failed: {e}") from e

    # ---------- local filesystem ----------

    def _local_target(self, path: str) -> Path:
        root = self.local_dir.resolve()
        target = (root / _object_name(path)).resolve()
        if root != target and root not in target.parents:
            raise StoreError(f"path escapes the store root: {path}")
        return target

    def _put_local(self, path: str, data: bytes) -> str:
        path = "/" + _object_name(path)
        path = _free_name(path, lambda p: self._local_target(p).exists())
        dest = self._local_target(path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        return path

    def _get_local(self, path: str) -> bytes:
        source = self._local_target(path)
        if not source.is_file():
            raise NotFoundError(f"{path} not found")
        return source.read_bytes()

    # ---------- Dropbox ----------

    def _dropbox_auth(self) -> str:
        if not self.dropbox_token:
            raise StoreError("DROPBOX_TOKEN env var is missing.")
        token = self.dropbox_token.strip()
        return token if token.startswith("Bearer ") else f"Bearer {token}"

    def _put_dropbox(self, path: str, data: bytes) -> str:
        headers = {
            "Authorization": self._dropbox_auth(),
            "Dropbox-API-Arg": json.dumps({
                "path": path,
                "mode": "add",
                "autorename": True,
                "mute": False,
            }),
            "Content-Type": "application/octet-stream",
        }
        try:
            resp = requests.post(DROPBOX_UPLOAD_URL, headers=headers, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise StoreError(f"dropbox upload failed: {e}") from e
        if resp.status_code in (401, 403):
            raise StoreError(f"dropbox rejected the token: {resp.text[:200]}")
        if not resp.ok:
            logger.error("Dropbox upload fail (raw): %s", resp.text[:400])
            raise StoreError(f"dropbox upload failed: {resp.text[:200]}")
        return resp.json().get("path_display") or path

    def _get_dropbox(self, path: str) -> bytes:
        headers = {
            "Authorization": self._dropbox_auth(),
            "Dropbox-API-Arg": json.dumps({"path": path}),
        }
        try:
            resp = requests.post(DROPBOX_DOWNLOAD_URL, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise StoreError(f"dropbox download failed: {e}") from e
        if resp.status_code == 409 and "not_found" in resp.text:
            raise NotFoundError(f"{path} not found")
        if resp.status_code in (401, 403):
            raise StoreError(f"dropbox rejected the token: {resp.text[:200]}")
        if not resp.ok:
            raise StoreError(f"dropbox download failed: {resp.text[:200]}")
        return resp.content

    # ---------- Google Cloud Storage ----------

    def _put_gcs(self, path: str, data: bytes, content_type: str) -> str:
        if not self.gcs_bucket:
            raise StoreError("GCS_BUCKET is required for GCP backend")
        client = _get_gcs_client()
        bucket = _ensure_bucket_exists(client, self.gcs_bucket)
        object_name = _free_name(_object_name(path), lambda name: bucket.blob(name).exists())
        bucket.blob(object_name).upload_from_string(data, content_type=content_type)
        # Standard GCS URI format: gs://bucket-name/path/to/obj
        return f"gs://{self.gcs_bucket}/{object_name}"

    def _get_gcs(self, path: str) -> bytes:
        bucket_name, object_name = _split_uri(path, "gs://")
        client = _get_gcs_client()
        blob = client.bucket(bucket_name or self.gcs_bucket).blob(object_name)
        if not blob.exists():
            raise NotFoundError(f"{path} not found")
        return blob.download_as_bytes()

    # ---------- Azure Blob Storage ----------

    def _put_azure(self, path: str, data: bytes, content_type: str) -> str:
        if not self.azure_container:
            raise StoreError("AZURE_CONTAINER env var is required for Azure backend")
        client = _get_azure_client(self.azure_conn_str)
        container_client = _ensure_container_exists(client, self.azure_container)
        object_name = _free_name(
            _object_name(path),
            lambda name: container_client.get_blob_client(name).exists(),
        )
        container_client.get_blob_client(object_name).upload_blob(
            data,
            overwrite=False,
            content_settings=ContentSettings(content_type=content_type),
        )
        # internal URI scheme for Azure objects: az://container/path
        return f"az://{self.azure_container}/{object_name}"

    def _get_azure(self, path: str) -> bytes:
        container_name, object_name = _split_uri(path, "az://")
        client = _get_azure_client(self.azure_conn_str)
        blob_client = client.get_container_client(container_name or self.azure_container).get_blob_client(object_name)
        if not blob_client.exists():
            raise NotFoundError(f"{path} not found")
        return blob_client.download_blob().readall()
