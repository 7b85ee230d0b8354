"""Object storage for prescriptions and product images (S3)"""
from typing import Optional, Protocol
from botocore.exceptions import BotoCoreError, ClientError
from opentelemetry import trace
import asyncio
import boto3
import logging
import uuid

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class StorageError(Exception):
    """Upload could not be completed"""


class ObjectStorage(Protocol):
    async def upload(self, folder: str, data: bytes, content_type: Optional[str] = None) -> str:
        """Store data under folder/<uuid> and return its public URL"""
        ...


class S3ObjectStorage:
    """ObjectStorage backed by an S3 bucket"""

    def __init__(
        self,
        bucket: Optional[str],
        region: str = "us-east-1",
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
    ):
        self.bucket = bucket
        self.region = region
        self._client = None
        self._client_kwargs = {"region_name": region}
        if aws_access_key_id:
            self._client_kwargs["aws_access_key_id"] = aws_access_key_id
            self._client_kwargs["aws_secret_access_key"] = aws_secret_access_key

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client("s3", **self._client_kwargs)
        return self._client

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def upload(self, folder: str, data: bytes, content_type: Optional[str] = None) -> str:
        with tracer.start_as_current_span("storage.upload") as span:
            if not self.bucket:
                raise StorageError("No S3 bucket configured")

            key = f"{folder}/{uuid.uuid4()}"
            span.set_attribute("storage.key", key)
            kwargs = {"Bucket": self.bucket, "Key": key, "Body": data}
            if content_type:
                kwargs["ContentType"] = content_type

            client = self._get_client()
            loop = asyncio.get_running_loop()
            try:
                await loop.run_in_executor(None, lambda: client.put_object(**kwargs))
            except (BotoCoreError, ClientError) as e:
                logger.error(f"S3 upload of {key} failed: {e}")
                span.record_exception(e)
                raise StorageError(str(e)) from e

            logger.info(f"Uploaded {len(data)} bytes to s3://{self.bucket}/{key}")
            return self.public_url(key)
