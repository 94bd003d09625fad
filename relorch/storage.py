"""S3 object store client for publishing release archives."""

import logging
from pathlib import Path
from typing import Optional

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger("relorch")


class UploadError(Exception):
    """A single object upload failed."""
    pass


class ObjectStore:
    """Uploads files to an S3 (or S3-compatible) bucket."""

    def __init__(
        self,
        bucket: str,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        prefix: str = "",
        acl: str = "public-read",
        client=None,
    ):
        """Initialize object store.

        Args:
            bucket: Bucket name
            region: AWS region (e.g. eu-west-2)
            endpoint_url: Custom endpoint for S3-compatible stores
            prefix: Key prefix prepended to every object name
            acl: Canned ACL applied to uploaded objects
            client: Pre-built boto3 S3 client
        """
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.acl = acl

        if client is None:
            client = boto3.client(
                "s3",
                region_name=region,
                endpoint_url=endpoint_url,
                config=Config(signature_version="s3v4"),
            )
        self._client = client

    def key_for(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def upload(self, path: Path, name: Optional[str] = None) -> str:
        """Upload a local file.

        Args:
            path: Local file
            name: Object name (defaults to the file name)

        Returns:
            The object key written

        Raises:
            UploadError: If the upload fails
        """
        path = Path(path)
        key = self.key_for(name or path.name)
        extra_args = {"ACL": self.acl} if self.acl else None

        try:
            self._client.upload_file(str(path), self.bucket, key, ExtraArgs=extra_args)
        except (ClientError, BotoCoreError, S3UploadFailedError) as e:
            logger.error(f"Failed to upload {path} to s3://{self.bucket}/{key}: {e}")
            raise UploadError(f"s3://{self.bucket}/{key}: {e}") from e

        return key

    def __repr__(self) -> str:
        return f"ObjectStore(bucket={self.bucket}, prefix={self.prefix!r})"
