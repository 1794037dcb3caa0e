from __future__ import annotations

import asyncio

import pytest

from campussync._constants import (
    MSG_PERMISSION_DENIED,
    MSG_REQUEST_FAILED,
    MSG_RETRYING,
    MSG_SESSION_EXPIRED,
    MSG_TIMEOUT,
    MSG_UNREACHABLE,
)
from campussync.config import RetryPolicy
from campussync.exceptions import (
    ApiError,
    CredentialExpiredError,
    NetworkTransientError,
    PermissionDeniedError,
    RateLimitedError,
    RequestTimeoutError,
    ServiceError,
    TerminalConnectionError,
)
from campussync.executor import ResilientExecutor
from campussync.session import Session, SessionManager
from campussync.toasts import Severity, ToastBus


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class _FailingOperation:
    def __init__(self, *errors: Exception, result: object = "done") -> None:
        self._errors = list(errors)
        self._result = result
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self._errors:
            raise self._errors.pop(0)
        return self._result


class _BrokenToasts(ToastBus):
    def post(self, *_args: object, **_kwargs: object) -> str:
        raise RuntimeError("display layer is gone")


def _contents(toasts: ToastBus) -> list[tuple[str, Severity]]:
    return [(m.content, m.severity) for m in toasts.messages]


@pytest.mark.asyncio
async def test_always_transient_failure_attempts_max_retries_plus_one() -> None:
    sleep = _RecordingSleep()
    toasts = ToastBus()
    executor = ResilientExecutor(toasts=toasts, sleep=sleep)
    policy = RetryPolicy(max_retries=3, base_delay=1.0, max_delay=4.0)
    operation = _FailingOperation(*[NetworkTransientError("reset") for _ in range(10)])

    with pytest.raises(TerminalConnectionError) as exc_info:
        await executor.execute(operation, policy=policy, label="assistant")

    assert operation.calls == 4
    assert exc_info.value.attempts == 4
    assert isinstance(exc_info.value.__cause__, NetworkTransientError)
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert sleep.delays == sorted(sleep.delays)
    assert all(delay <= policy.max_delay for delay in sleep.delays)
    assert _contents(toasts) == [(MSG_RETRYING, Severity.WARNING)] * 3 + [(MSG_UNREACHABLE, Severity.ERROR)]


@pytest.mark.asyncio
async def test_delays_are_capped_at_max_delay() -> None:
    sleep = _RecordingSleep()
    executor = ResilientExecutor(sleep=sleep)
    policy = RetryPolicy(max_retries=5, base_delay=1.0, max_delay=3.0)
    operation = _FailingOperation(*[ServiceError("down", status_code=503) for _ in range(6)])

    with pytest.raises(TerminalConnectionError):
        await executor.execute(operation, policy=policy)

    assert sleep.delays == [1.0, 2.0, 3.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_transient_failure_then_success_returns_result() -> None:
    sleep = _RecordingSleep()
    toasts = ToastBus()
    executor = ResilientExecutor(toasts=toasts, sleep=sleep)
    operation = _FailingOperation(NetworkTransientError("dns"), result={"rows": 1})

    assert await executor.execute(operation) == {"rows": 1}
    assert operation.calls == 2
    assert sleep.delays == [1.0]
    assert _contents(toasts) == [(MSG_RETRYING, Severity.WARNING)]


@pytest.mark.asyncio
async def test_rate_limit_uses_server_directed_delay() -> None:
    sleep = _RecordingSleep()
    executor = ResilientExecutor(sleep=sleep)
    operation = _FailingOperation(RateLimitedError("slow down", retry_after=7.0), result="ok")

    assert await executor.execute(operation) == "ok"
    assert sleep.delays == [7.0]


@pytest.mark.asyncio
async def test_permission_denied_is_not_retried() -> None:
    sleep = _RecordingSleep()
    toasts = ToastBus()
    executor = ResilientExecutor(toasts=toasts, sleep=sleep)
    operation = _FailingOperation(PermissionDeniedError("rls", code="42501", status_code=403))

    with pytest.raises(PermissionDeniedError):
        await executor.execute(operation)

    assert operation.calls == 1
    assert sleep.delays == []
    assert _contents(toasts) == [(MSG_PERMISSION_DENIED, Severity.ERROR)]


@pytest.mark.asyncio
async def test_credential_expiry_forces_logout_and_redirect() -> None:
    navigated: list[str] = []
    sessions = SessionManager(sign_in_path="/auth", navigator=navigated.append)
    sessions.login(Session(user_id="u1", access_token="tok"))
    toasts = ToastBus()
    executor = ResilientExecutor(toasts=toasts, sessions=sessions, current_path=lambda: "/feed")
    operation = _FailingOperation(CredentialExpiredError("gone", code="refresh_token_not_found"))

    with pytest.raises(CredentialExpiredError):
        await executor.execute(operation)

    assert operation.calls == 1
    assert sessions.current is None
    assert navigated == ["/auth"]
    assert _contents(toasts) == [(MSG_SESSION_EXPIRED, Severity.WARNING)]


@pytest.mark.asyncio
async def test_credential_expiry_skips_redirect_when_already_on_sign_in() -> None:
    navigated: list[str] = []
    sessions = SessionManager(sign_in_path="/auth", navigator=navigated.append)
    sessions.login(Session(user_id="u1", access_token="tok"))
    executor = ResilientExecutor(sessions=sessions, current_path=lambda: "/auth")

    with pytest.raises(CredentialExpiredError):
        await executor.execute(_FailingOperation(CredentialExpiredError("gone")))

    assert sessions.current is None
    assert navigated == []


@pytest.mark.asyncio
async def test_other_api_errors_fail_after_one_attempt() -> None:
    sleep = _RecordingSleep()
    toasts = ToastBus()
    executor = ResilientExecutor(toasts=toasts, sleep=sleep)
    operation = _FailingOperation(ApiError("bad request", status_code=400, code="PGRST100"))

    with pytest.raises(ApiError) as exc_info:
        await executor.execute(operation)

    assert exc_info.value.code == "PGRST100"
    assert operation.calls == 1
    assert sleep.delays == []
    assert _contents(toasts) == [(MSG_REQUEST_FAILED, Severity.ERROR)]


@pytest.mark.asyncio
async def test_timeout_cancels_attempt_and_is_not_retried() -> None:
    toasts = ToastBus()
    executor = ResilientExecutor(toasts=toasts, timeout=0.01)
    cancelled = asyncio.Event()
    calls = 0

    async def hang() -> None:
        nonlocal calls
        calls += 1
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.set()
            raise

    with pytest.raises(RequestTimeoutError):
        await executor.execute(hang)

    assert calls == 1
    assert cancelled.is_set()
    assert _contents(toasts) == [(MSG_TIMEOUT, Severity.ERROR)]


@pytest.mark.asyncio
async def test_toast_failures_never_change_the_outcome() -> None:
    sleep = _RecordingSleep()
    executor = ResilientExecutor(toasts=_BrokenToasts(), sleep=sleep)

    operation = _FailingOperation(NetworkTransientError("reset"), result="ok")
    assert await executor.execute(operation) == "ok"

    with pytest.raises(PermissionDeniedError):
        await executor.execute(_FailingOperation(PermissionDeniedError("rls", code="42501")))


@pytest.mark.asyncio
async def test_zero_retry_policy_fails_on_first_transient_error() -> None:
    sleep = _RecordingSleep()
    executor = ResilientExecutor(sleep=sleep)
    operation = _FailingOperation(NetworkTransientError("reset"))

    with pytest.raises(TerminalConnectionError) as exc_info:
        await executor.execute(operation, policy=RetryPolicy(max_retries=0))

    assert exc_info.value.attempts == 1
    assert sleep.delays == []
