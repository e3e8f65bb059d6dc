"""Tests for save error classification and retry delays."""

import asyncio
import errno
import sqlite3

import httpx
import pytest

from services.capture_errors import (
    NetworkError,
    OfflineError,
    PermissionDeniedError,
    RetryConfig,
    SaveError,
    StorageQuotaError,
    classify_save_error,
    is_fatal_code,
)


@pytest.mark.parametrize(
    "error, expected",
    [
        (OSError(errno.ENOSPC, "No space left on device"), StorageQuotaError),
        (PermissionError(errno.EACCES, "denied"), PermissionDeniedError),
        (asyncio.TimeoutError(), NetworkError),
        (ConnectionResetError("reset"), NetworkError),
        (sqlite3.OperationalError("database is locked"), NetworkError),
        (RuntimeError("upload failed: 413 payload too large"), StorageQuotaError),
        (RuntimeError("403 Forbidden"), PermissionDeniedError),
        (ValueError("something odd"), SaveError),
    ],
)
def test_classify_save_error(error, expected):
    classified = classify_save_error(error)
    assert type(classified) is expected


def test_typed_errors_pass_through():
    error = OfflineError()
    assert classify_save_error(error) is error


def test_httpx_status_errors_map_by_code():
    request = httpx.Request("POST", "http://storage.test/upload")

    def status_error(code):
        response = httpx.Response(code, request=request)
        return httpx.HTTPStatusError("failed", request=request, response=response)

    assert isinstance(classify_save_error(status_error(413)), StorageQuotaError)
    assert isinstance(classify_save_error(status_error(401)), PermissionDeniedError)
    assert isinstance(classify_save_error(status_error(503)), NetworkError)
    assert isinstance(classify_save_error(httpx.ConnectError("refused", request=request)), NetworkError)


def test_fatal_codes():
    assert is_fatal_code("storage_quota")
    assert is_fatal_code("permission")
    assert not is_fatal_code("network")
    assert not is_fatal_code(None)
    assert StorageQuotaError.retryable is False
    assert SaveError.retryable is True


def test_retry_config_exponential_with_cap():
    config = RetryConfig(base_delay=2.0, max_delay=10.0)

    assert [config.delay_for(n) for n in range(4)] == [2.0, 4.0, 8.0, 10.0]
