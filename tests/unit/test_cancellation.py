"""Unit tests for cancellation tokens."""

import threading

import pytest

from utils.cancellation import CancellationToken, OperationCancelled


def test_token_starts_active() -> None:
    token = CancellationToken()
    assert not token.cancelled
    token.raise_if_cancelled()


def test_cancel_with_reason() -> None:
    token = CancellationToken()
    token.cancel("shutdown requested")
    assert token.cancelled
    with pytest.raises(OperationCancelled, match="shutdown requested"):
        token.raise_if_cancelled()


def test_cancel_from_another_thread() -> None:
    token = CancellationToken()
    worker = threading.Thread(target=token.cancel)
    worker.start()
    worker.join()
    assert token.cancelled
    assert token.reason == "cancelled"
