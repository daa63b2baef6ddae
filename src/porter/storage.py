"""boto3-backed adapter for S3 and S3-compatible buckets."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from structlog import BoundLogger

from porter.config import StorageConfig
from porter.exceptions import StorageError
from utils.logging import get_logger

DEFAULT_CONTENT_TYPE = "application/octet-stream"
PUBLIC_READ_GRANTEE = "http://acs.amazonaws.com/groups/global/AllUsers"
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass(frozen=True)
class ObjectMetadata:
    """Attributes carried over when an object is copied."""

    content_type: str = DEFAULT_CONTENT_TYPE
    visibility: str = "private"


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", "Unknown"))


class ObjectStore:
    """One bucket on one endpoint, with lazily created boto3 client."""

    def __init__(
        self,
        config: StorageConfig,
        logger: Optional[BoundLogger] = None,
    ) -> None:
        """Initialize object store.

        Args:
            config: Bucket configuration
            logger: Optional logger instance
        """
        self.config = config
        self.bucket = config.bucket
        self.logger = logger or get_logger("storage")
        self._client: Optional[Any] = None

    @property
    def client(self) -> Any:
        """Get or create the S3 client."""
        if self._client is None:
            try:
                credentials = self.config.get_credentials()
                session = boto3.Session(**credentials) if credentials else boto3.Session()

                s3_kwargs: dict[str, Any] = {
                    "service_name": "s3",
                    "region_name": self.config.region,
                    "config": BotoConfig(
                        signature_version="s3v4",
                        s3={"addressing_style": "path" if self.config.use_path_style else "auto"},
                    ),
                }
                if self.config.endpoint:
                    s3_kwargs["endpoint_url"] = self.config.endpoint

                self._client = session.client(**s3_kwargs)
                self.logger.debug(
                    "S3 client initialized",
                    bucket=self.bucket,
                    endpoint=self.config.endpoint or "AWS S3",
                    region=self.config.region,
                    path_style=self.config.use_path_style,
                )
            except Exception as e:
                raise StorageError(
                    f"Failed to create S3 client: {e}",
                    context={"bucket": self.bucket},
                ) from e

        return self._client

    def full_key(self, key: str) -> str:
        """Apply the configured prefix to a key, avoiding double slashes."""
        key = key.lstrip("/")
        prefix = self.config.prefix.strip("/")
        if not prefix or key.startswith(prefix + "/"):
            return key
        return f"{prefix}/{key}"

    def check_access(self) -> None:
        """Check access to the bucket with HEAD bucket.

        Raises:
            StorageError: If the bucket is missing or not accessible
        """
        try:
            self.client.head_bucket(Bucket=self.bucket)
            self.logger.debug("Bucket exists and is accessible", bucket=self.bucket)
        except ClientError as e:
            code = _error_code(e)
            if code in NOT_FOUND_CODES:
                message = f"Bucket not found: {self.bucket}"
            elif code == "403":
                message = f"Access denied to bucket: {self.bucket}"
            else:
                message = f"Bucket check failed: {code}"
            raise StorageError(message, context={"bucket": self.bucket}) from e
        except BotoCoreError as e:
            raise StorageError(
                f"S3 client error during bucket check: {e}",
                context={"bucket": self.bucket},
            ) from e

    def list_keys(self, prefix: str = "") -> list[str]:
        """Complete listing of object keys under ``prefix`` (pagination handled here).

        Raises:
            StorageError: If listing fails
        """
        keys: list[str] = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    # Zero-byte "directory" markers are not files
                    if obj["Key"].endswith("/") and obj.get("Size", 0) == 0:
                        continue
                    keys.append(obj["Key"])
        except ClientError as e:
            raise StorageError(
                f"Failed to list objects: {_error_code(e)}",
                context={"bucket": self.bucket, "prefix": prefix},
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Boto3 error during listing: {e}",
                context={"bucket": self.bucket, "prefix": prefix},
            ) from e

        self.logger.debug("Objects listed", bucket=self.bucket, prefix=prefix, count=len(keys))
        return keys

    def exists(self, key: str) -> bool:
        """Return True if the object exists.

        Raises:
            StorageError: If existence cannot be determined
        """
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return False
            raise StorageError(
                f"Error checking object existence: {_error_code(e)}",
                context={"bucket": self.bucket, "key": key},
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Boto3 error checking object existence: {e}",
                context={"bucket": self.bucket, "key": key},
            ) from e

    def get_metadata(self, key: str) -> ObjectMetadata:
        """Read content type and ACL visibility of an object.

        Raises:
            StorageError: If either lookup fails
        """
        try:
            head = self.client.head_object(Bucket=self.bucket, Key=key)
            acl = self.client.get_object_acl(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                f"Failed to read object metadata: {e}",
                context={"bucket": self.bucket, "key": key},
            ) from e

        public = any(
            grant.get("Grantee", {}).get("URI") == PUBLIC_READ_GRANTEE
            and grant.get("Permission") in ("READ", "FULL_CONTROL")
            for grant in acl.get("Grants", [])
        )
        return ObjectMetadata(
            content_type=head.get("ContentType") or DEFAULT_CONTENT_TYPE,
            visibility="public" if public else "private",
        )

    def get_bytes(self, key: str) -> bytes:
        """Read a whole object into memory.

        Raises:
            StorageError: If the download fails
        """
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            raise StorageError(
                f"Failed to get object: {_error_code(e)}",
                context={"bucket": self.bucket, "key": key},
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Boto3 error during get_object: {e}",
                context={"bucket": self.bucket, "key": key},
            ) from e

    def put_bytes(
        self,
        key: str,
        body: bytes,
        metadata: Optional[ObjectMetadata] = None,
        set_acl: bool = True,
    ) -> None:
        """Write an object, applying content type and (optionally) its ACL.

        Raises:
            StorageError: If the upload fails
        """
        metadata = metadata or ObjectMetadata()
        extra_args: dict[str, Any] = {"ContentType": metadata.content_type}
        if set_acl:
            extra_args["ACL"] = "public-read" if metadata.visibility == "public" else "private"

        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=body, **extra_args)
        except ClientError as e:
            raise StorageError(
                f"Failed to put object: {_error_code(e)}",
                context={"bucket": self.bucket, "key": key},
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Boto3 error during put_object: {e}",
                context={"bucket": self.bucket, "key": key},
            ) from e

    def download_file(self, key: str, local_path: Path, bucket: Optional[str] = None) -> None:
        """Download an object to a local file (streamed by boto3's transfer manager).

        Raises:
            StorageError: If download fails
        """
        bucket = bucket or self.bucket
        try:
            self.logger.debug("Downloading object", bucket=bucket, key=key, local_path=str(local_path))
            self.client.download_file(Bucket=bucket, Key=key, Filename=str(local_path))
        except ClientError as e:
            raise StorageError(
                f"Failed to download object: {_error_code(e)}",
                context={"bucket": bucket, "key": key, "local_path": str(local_path)},
            ) from e
        except BotoCoreError as e:
            raise StorageError(
                f"Boto3 error during download: {e}",
                context={"bucket": bucket, "key": key, "local_path": str(local_path)},
            ) from e

    def presigned_url(self, key: str, expires_in: int) -> str:
        """Time-limited GET link for an object."""
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(
                f"Failed to presign URL: {e}",
                context={"bucket": self.bucket, "key": key},
            ) from e

    def public_url(self, key: str) -> str:
        """Durable URL of an object: configured base URL, else endpoint/bucket style."""
        quoted = quote(key)
        if self.config.url:
            return f"{self.config.url.rstrip('/')}/{quoted}"
        if self.config.endpoint:
            endpoint = self.config.endpoint.rstrip("/")
            if self.config.use_path_style:
                return f"{endpoint}/{self.bucket}/{quoted}"
            scheme, _, host = endpoint.partition("://")
            return f"{scheme}://{self.bucket}.{host}/{quoted}"
        return f"https://{self.bucket}.s3.{self.config.region}.amazonaws.com/{quoted}"
