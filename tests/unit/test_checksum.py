"""Unit tests for checksum utilities."""

import hashlib

from utils.checksum import ChecksumCalculator, RunningChecksum


def test_calculate_sha256() -> None:
    """Test SHA-256 calculation."""
    calculator = ChecksumCalculator()
    checksum = calculator.calculate_sha256(b"test data")
    assert checksum == hashlib.sha256(b"test data").hexdigest()
    assert len(checksum) == 64


def test_content_md5() -> None:
    """Test the base64 MD5 digest sent as Content-MD5."""
    calculator = ChecksumCalculator()
    assert calculator.content_md5(b"hello") == "XUFAKrxLKna5cZ2REBfFkg=="
    assert calculator.content_md5(b"") == "1B2M2Y8AsgTpgAmY7PhCfg=="


def test_running_checksum_matches_whole_stream() -> None:
    """Test that piecewise updates equal hashing the concatenation."""
    running = RunningChecksum()
    for piece in (b"SET NAMES utf8mb4;\n", b"", b"INSERT INTO t VALUES (1);\n"):
        running.update(piece)

    whole = b"SET NAMES utf8mb4;\nINSERT INTO t VALUES (1);\n"
    assert running.hexdigest() == hashlib.sha256(whole).hexdigest()
    assert running.size == len(whole)
