"""S3 uploads for prescriptions and product images"""
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from pharmacy_service.services.storage import S3ObjectStorage, StorageError


class TestS3ObjectStorage:
    @pytest.mark.asyncio
    async def test_upload_returns_public_url(self):
        client = MagicMock()
        with patch("pharmacy_service.services.storage.boto3.client", return_value=client):
            url = await S3ObjectStorage("rx-bucket", region="us-east-2").upload(
                "prescriptions", b"%PDF", "application/pdf"
            )

        kwargs = client.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "rx-bucket"
        assert kwargs["Key"].startswith("prescriptions/")
        assert kwargs["ContentType"] == "application/pdf"
        assert url == f"https://rx-bucket.s3.us-east-2.amazonaws.com/{kwargs['Key']}"

    @pytest.mark.asyncio
    async def test_no_bucket_configured(self):
        with pytest.raises(StorageError):
            await S3ObjectStorage(None).upload("products", b"png")

    @pytest.mark.asyncio
    async def test_client_error(self):
        client = MagicMock()
        client.put_object.side_effect = ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")
        with patch("pharmacy_service.services.storage.boto3.client", return_value=client):
            with pytest.raises(StorageError):
                await S3ObjectStorage("rx-bucket").upload("products", b"png")
