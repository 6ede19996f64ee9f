"""Blob store for signature images and signed PDFs, kept in an S3-compatible bucket."""
from __future__ import annotations

import base64
import hashlib
import binascii
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import PurePosixPath

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from contractdesk.config import get_settings

log = logging.getLogger("uvicorn.error")

_DATA_URL_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,")

FOLDER_SIGNATURES = "signatures"
FOLDER_AGREEMENTS = "agreements"


class BlobStorageError(Exception):
    pass


def decode_signature_image(data: str) -> bytes:
    """Decode a base64 image, with or without a data: URL prefix. Raises ValueError on bad input."""
    payload = _DATA_URL_PREFIX.sub("", (data or "").strip())
    if not payload:
        raise ValueError("signature image is empty")
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("signature image is not valid base64") from e
    if not raw:
        raise ValueError("signature image is empty")
    return raw


def blob_path(folder: str, project_id: int, file_name: str) -> str:
    return str(PurePosixPath(folder) / str(project_id) / file_name)


class BlobStore:
    """S3-compatible object store addressed by object key."""

    def __init__(self, client, bucket: str):
        self.client = client
        self.bucket = bucket

    def upload(self, path: str, data: bytes, content_type: str = "image/png") -> str:
        try:
            self.client.put_object(Bucket=self.bucket, Key=path, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as e:
            raise BlobStorageError(f"Upload failed for {path}: {e}") from e
        return path

    def download(self, path: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=path)
            return obj["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise BlobStorageError(f"Download failed for {path}: {e}") from e

    def delete(self, path: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=path)
        except (BotoCoreError, ClientError) as e:
            raise BlobStorageError(f"Delete failed for {path}: {e}") from e


@lru_cache
def get_s3_client():
    settings = get_settings()
    return boto3.client(
        "s3",
        endpoint_url=settings.blob_endpoint_url or None,
        aws_access_key_id=settings.blob_access_key_id or None,
        aws_secret_access_key=settings.blob_secret_access_key or None,
        region_name=settings.blob_region or None,
    )


def get_blob_store() -> BlobStore:
    """FastAPI dependency."""
    return BlobStore(get_s3_client(), get_settings().blob_bucket)


@dataclass(frozen=True)
class SignatureImage:
    name: str
    path: str
    sha256: str
    data: bytes


def prepare_signature_image(project_id: int, agreement_id: int, signer: str, data: str) -> SignatureImage:
    """Decode and address a signature image. The path embeds the content hash, so resubmitting
    the same image maps to the same blob. Raises ValueError on bad input."""
    raw = decode_signature_image(data)
    digest = hashlib.sha256(raw).hexdigest()
    name = f"agreement_{agreement_id}_{signer}_{digest[:16]}.png"
    return SignatureImage(name=name, path=blob_path(FOLDER_SIGNATURES, project_id, name), sha256=digest, data=raw)


def apply_blob_effects(store: BlobStore, uploads: list[SignatureImage], deletes: list[str]) -> list[str]:
    """Run blob writes queued by a committed transaction. Failures become warnings."""
    warnings: list[str] = []
    for image in uploads:
        try:
            store.upload(image.path, image.data)
        except BlobStorageError as e:
            log.warning("Blob upload failed: %s", e)
            warnings.append(f"Signature image could not be stored: {image.name}")
    for path in deletes:
        try:
            store.delete(path)
        except BlobStorageError as e:
            log.warning("Blob delete failed: %s", e)
            warnings.append(f"Stored file could not be removed: {path}")
    return warnings
