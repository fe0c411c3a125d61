"""
S3-compatible storage integration for Backblaze B2, AWS S3, MinIO, etc.
Uses boto3 for universal S3-compatible storage operations.

Uploads never pass through the API: ``initiate`` hands the client a presigned
PUT target, and the import runner later streams the object back by key.
"""
import logging
from typing import Any, BinaryIO, Dict, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings

logger = logging.getLogger(__name__)

_MISSING_OBJECT_CODES = {"404", "NoSuchKey", "NotFound"}


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConfigurationError(StorageError):
    """Raised when storage credentials or bucket are not configured."""
    pass


class StorageConnectionError(StorageError):
    """Raised when storage connection fails."""
    pass


class StorageDownloadError(StorageError):
    """Raised when an object cannot be read back."""
    pass


class ObjectStorage(Protocol):
    def create_upload_target(self, file_key: str, content_type: str, expires_in: int) -> Dict[str, Any]:
        ...

    def object_exists(self, file_key: str) -> bool:
        ...

    def open_stream(self, file_key: str) -> BinaryIO:
        ...


def get_storage_client():
    """
    Get S3-compatible storage client.

    Works with:
    - Backblaze B2 (S3-compatible API)
    - AWS S3
    - MinIO
    - Wasabi
    - DigitalOcean Spaces
    - Any S3-compatible storage

    Returns:
        boto3 S3 client configured for the storage provider

    Raises:
        StorageConfigurationError: If storage configuration is incomplete
    """
    if not all([settings.storage_access_key_id, settings.storage_secret_access_key, settings.storage_bucket_name]):
        raise StorageConfigurationError(
            "Storage configuration is incomplete. Please set STORAGE_ACCESS_KEY_ID, "
            "STORAGE_SECRET_ACCESS_KEY, and STORAGE_BUCKET_NAME in your environment."
        )

    config = Config(
        signature_version='s3v4',
        retries={'max_attempts': settings.storage_max_retries, 'mode': 'standard'}
    )

    client_kwargs = {
        'service_name': 's3',
        'aws_access_key_id': settings.storage_access_key_id,
        'aws_secret_access_key': settings.storage_secret_access_key,
        'config': config,
    }

    # Add endpoint URL for non-AWS providers (B2, MinIO, etc.)
    if settings.storage_endpoint_url:
        client_kwargs['endpoint_url'] = settings.storage_endpoint_url

    if settings.storage_region:
        client_kwargs['region_name'] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except (BotoCoreError, ValueError) as e:
        logger.error("Failed to create storage client: %s", e)
        raise StorageConnectionError(f"Failed to connect to storage: {str(e)}")


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3ObjectStorage:
    """Object storage backed by an S3-compatible bucket."""

    def __init__(self, client=None, bucket_name: Optional[str] = None):
        self._client = client
        self.bucket_name = bucket_name or settings.storage_bucket_name

    @property
    def client(self):
        if self._client is None:
            self._client = get_storage_client()
        return self._client

    def create_upload_target(self, file_key: str, content_type: str, expires_in: int) -> Dict[str, Any]:
        """
        Generate a pre-signed PUT target for direct browser-to-storage upload.

        The content type is part of the signature, so the client must send the
        same ``Content-Type`` header it declared at initiate.
        """
        params = {'Bucket': self.bucket_name, 'Key': file_key}
        if content_type:
            params['ContentType'] = content_type
        try:
            url = self.client.generate_presigned_url('put_object', Params=params, ExpiresIn=expires_in)
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to generate presigned upload URL for %s: %s", file_key, e)
            raise StorageError(f"Failed to generate upload URL: {str(e)}")

        headers = {'Content-Type': content_type} if content_type else {}
        return {"url": url, "method": "PUT", "headers": headers, "expires_in": expires_in}

    def object_exists(self, file_key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket_name, Key=file_key)
            return True
        except ClientError as e:
            if _error_code(e) in _MISSING_OBJECT_CODES:
                return False
            logger.error("Error checking object existence for %s: %s", file_key, e)
            raise StorageConnectionError(f"Could not check object {file_key}: {str(e)}")
        except BotoCoreError as e:
            logger.error("Storage unreachable while checking %s: %s", file_key, e)
            raise StorageConnectionError(f"Could not check object {file_key}: {str(e)}")

    def open_stream(self, file_key: str) -> BinaryIO:
        """
        Open the object body as a readable stream.

        The body is a botocore ``StreamingBody``; callers read it sequentially
        and must close it.
        """
        try:
            response = self.client.get_object(Bucket=self.bucket_name, Key=file_key)
        except ClientError as e:
            if _error_code(e) in _MISSING_OBJECT_CODES:
                raise StorageDownloadError(f"File not found: {file_key}")
            logger.error("Storage download failed for %s: %s", file_key, e)
            raise StorageDownloadError(f"Download failed: {str(e)}")
        except BotoCoreError as e:
            logger.error("Storage unreachable while opening %s: %s", file_key, e)
            raise StorageDownloadError(f"Download failed: {str(e)}")
        return response['Body']
