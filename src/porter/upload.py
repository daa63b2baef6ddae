"""Chunked (multipart) upload of a stream of buffer flushes to S3."""

from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from botocore.exceptions import BotoCoreError, ClientError

from porter.exceptions import UploadError
from porter.storage import ObjectStore
from utils.checksum import ChecksumCalculator
from utils.logging import get_logger
from utils.retry import RetryConfig, retry_sync


@dataclass
class UploadSession:
    """State of one in-progress multipart upload."""

    session_id: str
    bucket: str
    key: str
    part_number: int = 1
    completed_parts: list[dict[str, Any]] = field(default_factory=list)
    bytes_uploaded: int = 0
    last_part_size: Optional[int] = None


class ChunkedUploadSession:
    """Wraps create/upload_part/complete/abort with part-ordering checks.

    Parts must arrive numbered 1, 2, 3... with no gaps. Every part except the
    last must be at least ``MIN_PART_SIZE``; a short part is only accepted if no
    further part follows it. The session is finalized exactly once.
    """

    # Minimum part size is 5MB (except last part)
    MIN_PART_SIZE = 5 * 1024 * 1024
    # Maximum part size is 5GB
    MAX_PART_SIZE = 5 * 1024 * 1024 * 1024
    # Maximum number of parts is 10,000
    MAX_PARTS = 10000

    def __init__(
        self,
        store: ObjectStore,
        key: str,
        content_type: str = "application/sql",
        retry_config: Optional[RetryConfig] = None,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        """Initialize upload session.

        Args:
            store: Target object store
            key: Object key to create
            content_type: Content type of the finished object
            retry_config: Retry policy for transient part-upload errors
            logger: Optional logger instance
        """
        self.store = store
        self.key = key
        self.content_type = content_type
        self.logger = logger or get_logger("upload")
        self.checksum = ChecksumCalculator(logger=self.logger)
        self.retry_config = retry_config or RetryConfig(
            max_attempts=3,
            initial_delay=1.0,
            max_delay=30.0,
            retryable_exceptions=(ClientError, BotoCoreError),
        )
        self.state: Optional[UploadSession] = None
        self.finalized = False

    @property
    def session_id(self) -> Optional[str]:
        return self.state.session_id if self.state else None

    def open(self) -> str:
        """Start the multipart upload.

        Returns:
            The upload (session) id

        Raises:
            UploadError: If the session was already used or cannot be created
        """
        if self.state is not None or self.finalized:
            raise UploadError("Upload session already opened", context={"key": self.key})

        try:
            response = self.store.client.create_multipart_upload(
                Bucket=self.store.bucket,
                Key=self.key,
                ContentType=self.content_type,
            )
        except (ClientError, BotoCoreError) as e:
            raise UploadError(
                f"Failed to initiate multipart upload: {e}",
                context={"bucket": self.store.bucket, "key": self.key},
            ) from e

        self.state = UploadSession(
            session_id=response["UploadId"],
            bucket=self.store.bucket,
            key=self.key,
        )
        self.logger.info(
            "Initiated multipart upload",
            bucket=self.store.bucket,
            key=self.key,
            upload_id=self.state.session_id,
        )
        return self.state.session_id

    def _require_open(self) -> UploadSession:
        if self.state is None:
            raise UploadError("Upload session not opened", context={"key": self.key})
        if self.finalized:
            raise UploadError(
                "Upload session already finalized",
                context={"key": self.key, "upload_id": self.state.session_id},
            )
        return self.state

    def upload_part(self, part_number: int, data: bytes) -> str:
        """Upload the next part.

        Args:
            part_number: Must equal the next expected part number
            data: Part body

        Returns:
            The part's ETag

        Raises:
            UploadError: On ordering/size violations or upload failure. Upload
                failures abort the session first.
        """
        state = self._require_open()

        if part_number != state.part_number:
            raise UploadError(
                f"Part number {part_number} out of sequence (expected {state.part_number})",
                context={"key": self.key, "upload_id": state.session_id},
            )
        if part_number > self.MAX_PARTS:
            self.abort()
            raise UploadError(
                f"Multipart upload exceeds {self.MAX_PARTS} parts",
                context={"key": self.key},
            )
        if not data:
            raise UploadError("Refusing to upload an empty part", context={"key": self.key})
        if len(data) > self.MAX_PART_SIZE:
            self.abort()
            raise UploadError(
                f"Part {part_number} larger than {self.MAX_PART_SIZE} bytes",
                context={"key": self.key, "part_size": len(data)},
            )
        if state.last_part_size is not None and state.last_part_size < self.MIN_PART_SIZE:
            # The previous short part would become a non-final part
            self.abort()
            raise UploadError(
                f"Part {part_number - 1} is smaller than the {self.MIN_PART_SIZE}-byte minimum "
                "and is not the final part",
                context={"key": self.key, "part_size": state.last_part_size},
            )

        content_md5 = self.checksum.content_md5(data)

        def _send() -> dict[str, Any]:
            return self.store.client.upload_part(
                Bucket=self.store.bucket,
                Key=self.key,
                PartNumber=part_number,
                UploadId=state.session_id,
                Body=data,
                ContentMD5=content_md5,
            )

        try:
            response = retry_sync(
                _send,
                config=self.retry_config,
                logger=self.logger.bind(key=self.key, part_number=part_number),
            )
        except (ClientError, BotoCoreError) as e:
            self.abort()
            raise UploadError(
                f"Failed to upload part {part_number}: {e}",
                context={
                    "bucket": self.store.bucket,
                    "key": self.key,
                    "upload_id": state.session_id,
                    "part_number": part_number,
                },
            ) from e

        etag = response["ETag"]
        state.completed_parts.append({"PartNumber": part_number, "ETag": etag})
        state.part_number += 1
        state.bytes_uploaded += len(data)
        state.last_part_size = len(data)

        self.logger.debug(
            "Uploaded part",
            key=self.key,
            upload_id=state.session_id,
            part_number=part_number,
            part_size=len(data),
        )
        return etag

    def upload_next(self, data: bytes) -> str:
        """Upload ``data`` as the next part in sequence."""
        return self.upload_part(self._require_open().part_number, data)

    def complete(self) -> dict[str, Any]:
        """Finish the upload with the recorded parts, in order.

        Raises:
            UploadError: If no part was uploaded, parts are not 1..N, or completion
                fails (the session is aborted in the latter two cases)
        """
        state = self._require_open()

        if not state.completed_parts:
            self.abort()
            raise UploadError(
                "Cannot complete a multipart upload without parts",
                context={"key": self.key, "upload_id": state.session_id},
            )

        numbers = [part["PartNumber"] for part in state.completed_parts]
        if numbers != list(range(1, len(numbers) + 1)):
            self.abort()
            raise UploadError(
                "Recorded parts are not a gapless 1..N sequence",
                context={"key": self.key, "part_numbers": numbers},
            )

        try:
            response = self.store.client.complete_multipart_upload(
                Bucket=self.store.bucket,
                Key=self.key,
                UploadId=state.session_id,
                MultipartUpload={"Parts": state.completed_parts},
            )
        except (ClientError, BotoCoreError) as e:
            self.abort()
            raise UploadError(
                f"Failed to complete multipart upload: {e}",
                context={
                    "bucket": self.store.bucket,
                    "key": self.key,
                    "upload_id": state.session_id,
                },
            ) from e

        self.finalized = True
        self.logger.info(
            "Completed multipart upload",
            key=self.key,
            upload_id=state.session_id,
            total_parts=len(state.completed_parts),
            bytes_uploaded=state.bytes_uploaded,
        )
        return response

    def abort(self) -> None:
        """Abort the upload so no orphaned parts are billed. Safe to call twice."""
        if self.state is None or self.finalized:
            return

        self.finalized = True
        try:
            self.store.client.abort_multipart_upload(
                Bucket=self.store.bucket,
                Key=self.key,
                UploadId=self.state.session_id,
            )
            self.logger.info(
                "Aborted multipart upload",
                key=self.key,
                upload_id=self.state.session_id,
                parts_discarded=len(self.state.completed_parts),
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code", "") != "NoSuchUpload":
                self.logger.error(
                    "Failed to abort multipart upload; parts may be orphaned",
                    key=self.key,
                    upload_id=self.state.session_id,
                    error=str(e),
                )
        except BotoCoreError as e:
            self.logger.error(
                "Failed to abort multipart upload; parts may be orphaned",
                key=self.key,
                upload_id=self.state.session_id,
                error=str(e),
            )
