"""S3 durable store (AWS S3, MinIO, R2).

Key layout:
    <prefix>/<user_id>/<path>      file content
    <prefix>/<user_id>/<path>/     empty directory marker

boto3 is synchronous; every call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from berth.config import S3Config
from berth.errors import DurableStorageError
from berth.storage.base import DurableFileRecord, DurableStore
from berth.utils.datetime import ensure_utc, utcnow

logger = structlog.get_logger()

# delete_objects accepts at most 1000 keys per request
_DELETE_BATCH = 1000


class S3DurableStore(DurableStore):
    """Durable store backed by an S3-compatible bucket."""

    def __init__(self, config: S3Config | None = None, *, client: Any = None) -> None:
        self._config = config or S3Config()
        self.bucket = self._config.bucket
        self.prefix = self._config.prefix.strip("/")
        self._client = client
        self._log = logger.bind(store="s3", bucket=self.bucket)

    @property
    def client(self) -> Any:
        """Lazy initialization of boto3 S3 client"""
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self._config.endpoint_url,
                aws_access_key_id=self._config.access_key,
                aws_secret_access_key=self._config.secret_key,
                region_name=self._config.region,
                config=Config(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
            )
        return self._client

    def _user_prefix(self, user_id: str) -> str:
        if self.prefix:
            return f"{self.prefix}/{user_id}/"
        return f"{user_id}/"

    def _key(self, user_id: str, path: str) -> str:
        return self._user_prefix(user_id) + path

    async def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise DurableStorageError(
                f"S3 {operation} failed: {e}",
                operation=operation,
                bucket=self.bucket,
            ) from e

    # Blocking helpers (run in worker threads)

    def _list_keys(self, prefix: str) -> list[dict[str, Any]]:
        paginator = self.client.get_paginator("list_objects_v2")
        objects: list[dict[str, Any]] = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            objects.extend(page.get("Contents", []))
        return objects

    def _read(self, key: str) -> tuple[str, datetime] | None:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise
        body = response["Body"].read()
        modified = response.get("LastModified") or utcnow()
        return body.decode("utf-8", errors="replace"), ensure_utc(modified)

    def _delete_keys(self, keys: list[str]) -> int:
        deleted = 0
        for start in range(0, len(keys), _DELETE_BATCH):
            batch = keys[start : start + _DELETE_BATCH]
            response = self.client.delete_objects(
                Bucket=self.bucket,
                Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
            )
            errors = response.get("Errors") or []
            if errors:
                first = errors[0]
                raise DurableStorageError(
                    f"S3 delete failed for {first.get('Key')}: {first.get('Message')}",
                    failed=len(errors),
                )
            deleted += len(batch)
        return deleted

    def _list_records(self, user_id: str) -> list[DurableFileRecord]:
        base = self._user_prefix(user_id)
        records: list[DurableFileRecord] = []
        for obj in self._list_keys(base):
            key = obj["Key"]
            rel = key[len(base) :]
            if not rel.strip("/"):
                continue
            if rel.endswith("/"):
                records.append(
                    DurableFileRecord(
                        path=rel.rstrip("/"),
                        is_directory_marker=True,
                        updated_at=ensure_utc(obj.get("LastModified") or utcnow()),
                    )
                )
                continue
            loaded = self._read(key)
            if loaded is None:
                continue
            content, modified = loaded
            records.append(DurableFileRecord(path=rel, content=content, updated_at=modified))
        return records

    # DurableStore

    async def initialize(self) -> None:
        try:
            await self._call("head_bucket", self.client.head_bucket, Bucket=self.bucket)
        except DurableStorageError as e:
            cause = e.__cause__
            if not isinstance(cause, ClientError) or cause.response.get("Error", {}).get("Code") not in (
                "404",
                "NoSuchBucket",
            ):
                raise
            self._log.info("storage.s3.create_bucket")
            await self._call("create_bucket", self.client.create_bucket, Bucket=self.bucket)
        self._log.info("storage.s3.initialized")

    async def put(self, user_id: str, record: DurableFileRecord) -> None:
        key = self._key(user_id, record.path)
        if record.is_directory_marker:
            key += "/"
        await self._call(
            "put",
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=record.content.encode("utf-8"),
            ContentType="text/plain; charset=utf-8",
        )

    async def get(self, user_id: str, path: str) -> DurableFileRecord | None:
        loaded = await self._call("get", self._read, self._key(user_id, path))
        if loaded is None:
            return None
        content, modified = loaded
        return DurableFileRecord(path=path, content=content, updated_at=modified)

    async def list_records(self, user_id: str) -> list[DurableFileRecord]:
        return await self._call("list", self._list_records, user_id)

    async def delete(self, user_id: str, path: str) -> None:
        await self._call(
            "delete",
            self.client.delete_object,
            Bucket=self.bucket,
            Key=self._key(user_id, path),
        )

    async def delete_markers(self, user_id: str, paths: Iterable[str]) -> None:
        keys = [self._key(user_id, p) + "/" for p in paths]
        if keys:
            await self._call("delete_markers", self._delete_keys, keys)

    async def delete_tree(self, user_id: str, path: str) -> int:
        key = self._key(user_id, path)

        def _collect_and_delete() -> int:
            keys = [obj["Key"] for obj in self._list_keys(key + "/")]
            keys.append(key)
            return self._delete_keys(keys)

        return await self._call("delete_tree", _collect_and_delete)

    async def ping(self) -> None:
        await self._call("head_bucket", self.client.head_bucket, Bucket=self.bucket)
