import asyncio
import logging
import os
import uuid
from typing import Iterable, Optional

import boto3
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError


_STORAGE_CLIENT: Optional[BaseClient] = None

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _get_client() -> BaseClient:
    global _STORAGE_CLIENT
    if _STORAGE_CLIENT:
        return _STORAGE_CLIENT

    access_key = os.getenv("STORAGE_ACCESS_KEY_ID", "minioadmin")
    secret_key = os.getenv("STORAGE_SECRET_ACCESS_KEY", "minioadmin")
    region = os.getenv("STORAGE_REGION", "us-east-1")
    endpoint = os.getenv("STORAGE_ENDPOINT")
    addressing_style = "path" if _bool_env("STORAGE_FORCE_PATH_STYLE", True) else "auto"

    session = boto3.session.Session(
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        region_name=region,
    )
    config = Config(signature_version="s3v4", s3={"addressing_style": addressing_style})
    _STORAGE_CLIENT = session.client("s3", endpoint_url=endpoint, config=config)
    return _STORAGE_CLIENT


def bucket_name() -> str:
    bucket = os.getenv("STORAGE_BUCKET")
    if not bucket:
        raise RuntimeError("Missing STORAGE_BUCKET configuration")
    return bucket


def generate_object_key(user_id: str) -> str:
    return f"user/{user_id}/file/{uuid.uuid4()}/original"


def sibling_key(object_key: str, name: str) -> str:
    """``user/u/file/<id>/original`` -> ``user/u/file/<id>/<name>``."""
    prefix, _, _ = object_key.rpartition("/")
    return f"{prefix}/{name}"


def upload_bytes(key: str, data: bytes, content_type: str) -> None:
    client = _get_client()
    client.put_object(Bucket=bucket_name(), Key=key, Body=data, ContentType=content_type)


def fetch_object_bytes(key: str) -> bytes:
    client = _get_client()
    try:
        response = client.get_object(Bucket=bucket_name(), Key=key)
    except ClientError as exc:
        raise StorageError(str(exc)) from exc
    body = response.get("Body")
    if body is None:
        raise StorageError("Object body missing")
    return body.read()


def delete_objects(keys: Iterable[str]) -> None:
    items = [k for k in keys if k]
    if not items:
        return
    client = _get_client()
    entries = [{"Key": key} for key in items]
    client.delete_objects(Bucket=bucket_name(), Delete={"Objects": entries, "Quiet": True})


# boto3 is blocking; the async variants keep the event loop free.

async def put_object(key: str, data: bytes, content_type: str) -> None:
    await asyncio.to_thread(upload_bytes, key, data, content_type)


async def get_object(key: str) -> bytes:
    return await asyncio.to_thread(fetch_object_bytes, key)


async def remove_objects_quietly(keys: Iterable[str]) -> bool:
    """Best-effort delete. Failures are logged and reported as False."""
    items = [k for k in keys if k]
    try:
        await asyncio.to_thread(delete_objects, items)
    except (BotoCoreError, ClientError, RuntimeError) as exc:
        logger.error("Object store cleanup failed for %s: %s", items, exc)
        return False
    return True
