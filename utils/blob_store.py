"""Filesystem blob buckets for template and generated document binaries."""
import hashlib
import os
import time
import uuid
from typing import Iterator, Optional

from flask import current_app

from utils.errors import DependencyError, NotFoundError

BUCKETS: tuple[str, ...] = ("templates", "processed_documents", "verification_documents", "announcements")


class BlobStore:
    """Immutable blobs addressed by ``<bucket>/<key>``.

    Writes go to a temporary sibling file and are renamed into place, so a key
    either resolves to a complete binary or does not exist at all.
    """

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)
        for bucket in BUCKETS:
            os.makedirs(os.path.join(self.root, bucket), exist_ok=True)

    def _path(self, bucket: str, key: str) -> str:
        if bucket not in BUCKETS:
            raise ValueError(f"Unknown bucket: {bucket}")
        bucket_root = os.path.join(self.root, bucket)
        path = os.path.abspath(os.path.join(bucket_root, key))
        if os.path.dirname(path) != bucket_root:
            raise ValueError("Blob key rejected: outside bucket")
        return path

    @staticmethod
    def new_key(extension: str = "") -> str:
        suffix = extension if not extension or extension.startswith(".") else f".{extension}"
        return f"{uuid.uuid4().hex}{suffix}"

    def put(self, bucket: str, data: bytes, key: Optional[str] = None, extension: str = "") -> dict:
        """Write ``data`` and return ``{"key", "size", "sha256"}`` once it is confirmed on disk."""
        key = key or self.new_key(extension)
        path = self._path(bucket, key)
        tmp_path = f"{path}.{uuid.uuid4().hex}.tmp"
        digest = hashlib.sha256(data).hexdigest()
        try:
            with open(tmp_path, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
        except OSError as exc:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise DependencyError("Unable to write blob", dependency="blob_store") from exc

        size = os.path.getsize(path)
        if size != len(data):
            self.delete(bucket, key)
            raise DependencyError("Blob size mismatch after write", dependency="blob_store")
        return {"key": key, "size": size, "sha256": digest}

    def get(self, bucket: str, key: str) -> bytes:
        path = self._path(bucket, key)
        if not os.path.isfile(path):
            raise NotFoundError("File not found")
        try:
            with open(path, "rb") as handle:
                return handle.read()
        except OSError as exc:
            raise DependencyError("Unable to read blob", dependency="blob_store") from exc

    def exists(self, bucket: str, key: str) -> bool:
        return os.path.isfile(self._path(bucket, key))

    def size(self, bucket: str, key: str) -> int:
        path = self._path(bucket, key)
        if not os.path.isfile(path):
            raise NotFoundError("File not found")
        return os.path.getsize(path)

    def modified_at(self, bucket: str, key: str) -> float:
        return os.path.getmtime(self._path(bucket, key))

    def delete(self, bucket: str, key: str) -> bool:
        path = self._path(bucket, key)
        try:
            os.remove(path)
            return True
        except FileNotFoundError:
            return False

    def iter_keys(self, bucket: str) -> Iterator[str]:
        bucket_root = os.path.join(self.root, bucket)
        for name in sorted(os.listdir(bucket_root)):
            if name.endswith(".tmp"):
                continue
            if os.path.isfile(os.path.join(bucket_root, name)):
                yield name

    def iter_temp_files(self, bucket: str) -> Iterator[str]:
        bucket_root = os.path.join(self.root, bucket)
        for name in sorted(os.listdir(bucket_root)):
            if name.endswith(".tmp"):
                yield os.path.join(bucket_root, name)


def init_blob_store(app) -> BlobStore:
    store = BlobStore(app.config["BLOB_STORAGE_DIR"])
    app.extensions["blob_store"] = store
    return store


def get_blob_store() -> BlobStore:
    return current_app.extensions["blob_store"]


def sweep_orphans(dry_run: bool = False, min_age_seconds: int = 300) -> dict:
    """Remove blobs no metadata row references, plus abandoned temp files.

    Files younger than ``min_age_seconds`` are left alone so an in-flight
    generation can still commit its metadata row.
    """
    from models import Announcement, ProcessedDocument, Template, VerificationRequest  # Local import to avoid circular dependency

    store = get_blob_store()
    referenced = {
        "templates": {key for (key,) in Template.query.with_entities(Template.blob_key)},
        "processed_documents": {key for (key,) in ProcessedDocument.query.with_entities(ProcessedDocument.blob_key)},
        "verification_documents": {
            key for (key,) in VerificationRequest.query.with_entities(VerificationRequest.blob_key)
        },
        "announcements": {
            key for (key,) in Announcement.query.with_entities(Announcement.image_key).filter(Announcement.image_key.isnot(None))
        },
    }
    cutoff = time.time() - min_age_seconds
    removed: dict[str, list[str]] = {}
    for bucket in BUCKETS:
        orphans = [
            key
            for key in store.iter_keys(bucket)
            if key not in referenced[bucket] and store.modified_at(bucket, key) < cutoff
        ]
        temps = [p for p in store.iter_temp_files(bucket) if os.path.getmtime(p) < cutoff]
        if not dry_run:
            for key in orphans:
                store.delete(bucket, key)
            for path in temps:
                os.remove(path)
        removed[bucket] = orphans + [os.path.basename(p) for p in temps]

    current_app.logger.info("blob_sweep_completed", extra={"removed": removed, "dry_run": dry_run})
    return removed
