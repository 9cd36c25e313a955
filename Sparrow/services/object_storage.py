import asyncio
import logging
import os
import pathlib
import uuid
from typing import Optional

import boto3

logger = logging.getLogger(__name__)
_ROOT = pathlib.Path(__file__).resolve().parents[2]


def _unique_key(filename: str) -> str:
    return f"{uuid.uuid4().hex}-{pathlib.Path(filename).name}"


# Stores generated files in a local directory served by the app under /files
class LocalObjectStorage:
    def __init__(self, directory: str, public_base_url: str):
        self.directory = pathlib.Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _write(self, key: str, content: bytes) -> None:
        (self.directory / key).write_bytes(content)

    async def store(self, content: bytes, filename: str, content_type: str) -> str:
        key = _unique_key(filename)
        await asyncio.to_thread(self._write, key, content)
        logger.info("storage.local.stored: key=%s bytes=%d type=%s", key, len(content), content_type)
        return f"{self.public_base_url}/{key}"


class S3ObjectStorage:
    def __init__(self, bucket: str, region: Optional[str] = None, public_base_url: Optional[str] = None):
        self.bucket = bucket
        self.region = region
        self._client = boto3.client("s3", region_name=region)
        if public_base_url:
            self.public_base_url = public_base_url.rstrip("/")
        elif region:
            self.public_base_url = f"https://{bucket}.s3.{region}.amazonaws.com"
        else:
            self.public_base_url = f"https://{bucket}.s3.amazonaws.com"

    async def store(self, content: bytes, filename: str, content_type: str) -> str:
        key = _unique_key(filename)
        await asyncio.to_thread(
            self._client.put_object, Bucket=self.bucket, Key=key, Body=content, ContentType=content_type
        )
        logger.info("storage.s3.stored: bucket=%s key=%s bytes=%d", self.bucket, key, len(content))
        return f"{self.public_base_url}/{key}"


def local_storage_dir() -> str:
    return os.getenv("LOCAL_STORAGE_DIR") or str(_ROOT / "generated_files")


_singleton = None


def get_object_storage():
    global _singleton
    if _singleton is not None:
        return _singleton

    backend = (os.getenv("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        bucket = os.getenv("S3_BUCKET")
        if not bucket:
            raise RuntimeError("S3_BUCKET must be set when STORAGE_BACKEND=s3.")
        _singleton = S3ObjectStorage(bucket, os.getenv("AWS_REGION"), os.getenv("S3_PUBLIC_BASE_URL"))
    elif backend == "local":
        base_url = os.getenv("PUBLIC_FILES_BASE_URL") or "http://localhost:8000/files"
        _singleton = LocalObjectStorage(local_storage_dir(), base_url)
    else:
        raise RuntimeError(f"Unknown STORAGE_BACKEND: {backend}")
    return _singleton
