"""Tests for the bounded retry combinator."""

from unittest.mock import AsyncMock

import pytest

from memlink.utils.embedding_client import MalformedResponseError, ModelServerError
from memlink.utils.retry import retry_async


@pytest.mark.asyncio
async def test_returns_after_transient_failures():
    operation = AsyncMock(side_effect=[ModelServerError('busy'), 'ok'])

    result = await retry_async(operation, attempts=3, delay=0, retry_on=(ModelServerError, ))

    assert result == 'ok'
    assert operation.call_count == 2


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately():
    operation = AsyncMock(side_effect=MalformedResponseError('bad reply'))

    with pytest.raises(MalformedResponseError):
        await retry_async(operation, attempts=3, delay=0, retry_on=(ModelServerError, ))
    assert operation.call_count == 1


@pytest.mark.asyncio
async def test_exhausted_attempts_reraise_last_error():
    last = ModelServerError('third')
    operation = AsyncMock(side_effect=[ModelServerError('first'), ModelServerError('second'), last])

    with pytest.raises(ModelServerError) as exc_info:
        await retry_async(operation, attempts=3, delay=0, retry_on=(ModelServerError, ))
    assert exc_info.value is last
    assert operation.call_count == 3


@pytest.mark.asyncio
async def test_at_least_one_attempt_is_made():
    operation = AsyncMock(return_value=42)

    assert await retry_async(operation, attempts=0, delay=0) == 42
    assert operation.call_count == 1
