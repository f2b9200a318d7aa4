from __future__ import annotations

from typing import List

import pytest

from grow_sdk.config import RetryPolicy
from grow_sdk.errors import ApiError, ErrorKind
from grow_sdk.retry import RetryController


class Script:
    """Raises the queued errors in order, then returns ``result``."""

    def __init__(self, *errors: ApiError, result: str = "ok") -> None:
        self.errors: List[ApiError] = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def _server_error() -> ApiError:
    return ApiError("unavailable", kind=ErrorKind.SERVER, status_code=503)


@pytest.mark.asyncio
async def test_transient_failures_back_off_exponentially(sleeper) -> None:
    controller = RetryController(RetryPolicy(max_retries=4, base_delay=0.5), sleep=sleeper)
    script = Script(_server_error(), _server_error(), _server_error())

    assert await controller.execute(script) == "ok"
    assert script.calls == 4
    assert sleeper.delays == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_exhaustion_reraises_last_error(sleeper) -> None:
    controller = RetryController(RetryPolicy(max_retries=3, base_delay=1.0), sleep=sleeper)
    script = Script(*[_server_error() for _ in range(5)])

    with pytest.raises(ApiError) as excinfo:
        await controller.execute(script)

    assert script.calls == 3
    assert excinfo.value.retries_exhausted
    assert excinfo.value.attempts == 3
    assert sleeper.delays == [1.0, 2.0]


@pytest.mark.parametrize(
    "kind",
    [ErrorKind.NOT_FOUND, ErrorKind.AUTHENTICATION, ErrorKind.VALIDATION, ErrorKind.PARSING, ErrorKind.CONFLICT],
)
@pytest.mark.asyncio
async def test_non_transient_errors_are_not_retried(sleeper, kind: ErrorKind) -> None:
    controller = RetryController(RetryPolicy(max_retries=5), sleep=sleeper)
    script = Script(ApiError("nope", kind=kind))

    with pytest.raises(ApiError) as excinfo:
        await controller.execute(script)

    assert script.calls == 1
    assert sleeper.delays == []
    assert excinfo.value.attempts == 1
    assert not excinfo.value.retries_exhausted


@pytest.mark.asyncio
async def test_retry_after_overrides_next_delay_only(sleeper) -> None:
    controller = RetryController(RetryPolicy(max_retries=4, base_delay=1.0), sleep=sleeper)
    limited = ApiError("slow down", kind=ErrorKind.RATE_LIMIT, status_code=429, retry_after=10.0)
    script = Script(limited, _server_error())

    assert await controller.execute(script) == "ok"
    assert sleeper.delays == [10.0, 2.0]


@pytest.mark.asyncio
async def test_rate_limit_without_retry_after_fails_fast(sleeper) -> None:
    controller = RetryController(RetryPolicy(max_retries=4), sleep=sleeper)
    script = Script(ApiError("slow down", kind=ErrorKind.RATE_LIMIT, status_code=429))

    with pytest.raises(ApiError):
        await controller.execute(script)
    assert script.calls == 1


@pytest.mark.asyncio
async def test_zero_retries_means_single_attempt(sleeper) -> None:
    controller = RetryController(RetryPolicy(max_retries=0), sleep=sleeper)
    script = Script(_server_error())

    with pytest.raises(ApiError) as excinfo:
        await controller.execute(script)
    assert script.calls == 1
    assert excinfo.value.retries_exhausted
