"""S3/MinIO object store for stream artifacts."""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator, Optional

import aioboto3
import aiofiles
import backoff
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings

logger = logging.getLogger(__name__)


class ObjectStore:
    """Async put/list/exists access to the stream bucket.

    Operations log failures and return ``None``/``False``/``[]`` instead of
    raising, so callers such as the sync watcher keep running.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.bucket = settings.s3_bucket_name
        self._session: Optional[aioboto3.Session] = None
        self._config = Config(
            region_name=settings.s3_region,
            signature_version="s3v4",
            retries={
                "max_attempts": 3,
                "mode": "standard",
            },
            max_pool_connections=50,
        )
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aioboto3.Session:
        """Get or create aioboto3 session."""
        async with self._lock:
            if not self._session:
                self._session = aioboto3.Session()
            return self._session

    @asynccontextmanager
    async def _get_client(self) -> AsyncGenerator[Any, None]:
        """Get S3 client with connection management."""
        session = await self._get_session()

        async with session.client(
            "s3",
            endpoint_url=self.settings.s3_endpoint_url or None,
            aws_access_key_id=self.settings.s3_access_key_id,
            aws_secret_access_key=self.settings.s3_secret_access_key,
            config=self._config,
        ) as client:
            yield client

    def object_url(self, key: str) -> str:
        """Public URL of an object."""
        base = self.settings.public_base_url or self.settings.s3_endpoint_url
        if base:
            return f"{base.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.settings.s3_region}.amazonaws.com/{key}"

    def _public_read_policy(self) -> str:
        return json.dumps(
            {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Principal": {"AWS": ["*"]},
                        "Action": ["s3:GetObject"],
                        "Resource": [f"arn:aws:s3:::{self.bucket}/*"],
                    }
                ],
            }
        )

    async def _ensure_bucket_once(self) -> None:
        async with self._get_client() as client:
            try:
                await client.head_bucket(Bucket=self.bucket)
                logger.info(f"Bucket {self.bucket} already exists")
                return
            except ClientError as e:
                if e.response["Error"]["Code"] not in ("404", "NoSuchBucket"):
                    raise

            if self.settings.s3_region == "us-east-1":
                await client.create_bucket(Bucket=self.bucket)
            else:
                await client.create_bucket(
                    Bucket=self.bucket,
                    CreateBucketConfiguration={
                        "LocationConstraint": self.settings.s3_region
                    },
                )
            logger.info(f"Created bucket {self.bucket}")

            if self.settings.storage_public_read:
                await client.put_bucket_policy(
                    Bucket=self.bucket, Policy=self._public_read_policy()
                )
                logger.info(f"Set public read policy on {self.bucket}")

    async def ensure_bucket(self) -> bool:
        """Create the bucket if missing, retrying a fixed number of times.

        Returns:
            True if the bucket is ready, False after giving up
        """

        def _log_retry(details: dict) -> None:
            logger.warning(
                f"Failed to initialise bucket {self.bucket}, "
                f"retries left: {self.settings.storage_init_attempts - details['tries']}"
            )

        retrying = backoff.on_exception(
            backoff.constant,
            (ClientError, BotoCoreError, OSError),
            max_tries=self.settings.storage_init_attempts,
            interval=self.settings.storage_retry_delay_seconds,
            jitter=None,
            on_backoff=_log_retry,
        )(self._ensure_bucket_once)

        try:
            await retrying()
            return True
        except (ClientError, BotoCoreError, OSError) as e:
            logger.error(f"Could not initialise bucket {self.bucket} after retries: {e}")
            return False

    async def upload_file(
        self,
        path: Path,
        key: str,
        content_type: str,
    ) -> Optional[str]:
        """Upload a local file under ``key``.

        Re-uploading the same file overwrites the object with identical
        content and content type.

        Returns:
            Object URL if successful, None otherwise
        """
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()

            async with self._get_client() as client:
                response = await client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                )

            logger.info(
                f"Uploaded {path.name} to {self.bucket}/{key} "
                f"({len(data)} bytes, ETag: {response.get('ETag')})"
            )
            return self.object_url(key)

        except (ClientError, BotoCoreError, OSError) as e:
            logger.error(f"Failed to upload {path} to {self.bucket}/{key}: {e}")
            return None

    async def file_exists(self, key: str) -> bool:
        """Check if an object exists."""
        try:
            async with self._get_client() as client:
                await client.head_object(Bucket=self.bucket, Key=key)
                return True

        except ClientError as e:
            if e.response["Error"]["Code"] in ("404", "NoSuchKey"):
                return False
            logger.error(f"Failed to check file existence {self.bucket}/{key}: {e}")
            return False
        except BotoCoreError as e:
            logger.error(f"Failed to check file existence {self.bucket}/{key}: {e}")
            return False

    async def list_objects(
        self,
        prefix: Optional[str] = None,
        limit: int = 1000,
    ) -> Optional[list[dict[str, Any]]]:
        """List objects under a prefix.

        Returns:
            Object descriptions, or None if the store could not be listed
        """
        files = []
        try:
            async with self._get_client() as client:
                paginator = client.get_paginator("list_objects_v2")

                page_config = {"Bucket": self.bucket, "MaxKeys": limit}
                if prefix:
                    page_config["Prefix"] = prefix

                async for page in paginator.paginate(**page_config):
                    for obj in page.get("Contents", []):
                        files.append(
                            {
                                "name": obj["Key"],
                                "size": obj["Size"],
                                "lastModified": obj["LastModified"],
                            }
                        )

                        if len(files) >= limit:
                            break

                    if len(files) >= limit:
                        break

            logger.info(f"Listed {len(files)} objects from {self.bucket}/{prefix or ''}")
            return files

        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to list objects in {self.bucket}/{prefix or ''}: {e}")
            return None
