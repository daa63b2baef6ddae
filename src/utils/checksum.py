"""Checksum utilities for upload integrity."""

import base64
import hashlib
from typing import Optional

import structlog

from utils.logging import get_logger


class ChecksumCalculator:
    """Calculates part and artifact checksums."""

    def __init__(self, logger: Optional[structlog.BoundLogger] = None) -> None:
        """Initialize checksum calculator.

        Args:
            logger: Optional logger instance
        """
        self.logger = logger or get_logger("checksum")

    def calculate_sha256(self, data: bytes) -> str:
        """Calculate SHA-256 checksum of data.

        Args:
            data: Data to checksum

        Returns:
            Hexadecimal SHA-256 checksum (64 characters)
        """
        return hashlib.sha256(data).hexdigest()

    def content_md5(self, data: bytes) -> str:
        """Base64-encoded MD5 digest, the form S3 expects in ``Content-MD5``.

        Args:
            data: Part or object body

        Returns:
            Base64 MD5 digest
        """
        digest = hashlib.md5(data).digest()
        checksum = base64.b64encode(digest).decode("ascii")

        self.logger.debug("Content-MD5 calculated", checksum=checksum, data_size=len(data))

        return checksum


class RunningChecksum:
    """Incremental SHA-256 over a stream that is written in pieces."""

    def __init__(self) -> None:
        self._hash = hashlib.sha256()
        self.size = 0

    def update(self, data: bytes) -> None:
        self._hash.update(data)
        self.size += len(data)

    def hexdigest(self) -> str:
        return self._hash.hexdigest()
