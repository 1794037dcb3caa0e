"""Client configuration for campussync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from campussync.exceptions import ConfigError


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    """Retry ceiling and exponential backoff for one call site.

    Parameters
    ----------
    max_retries : int
        Retries after the first attempt.  A call that keeps failing is
        attempted ``max_retries + 1`` times in total.
    base_delay : float
        Delay in seconds before the first retry; doubled for each later one.
    max_delay : float
        Upper bound for any single delay.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 8.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigError("retry delays must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based)."""
        if attempt < 1:
            return 0.0
        return float(min(self.base_delay * (2 ** (attempt - 1)), self.max_delay))


@dataclasses.dataclass(frozen=True)
class CampusConfig:
    """Client configuration.

    Parameters
    ----------
    supabase_url : str
        Project base URL, e.g. ``https://xyz.supabase.co``.
    anon_key : str
        Public anon key sent as ``apikey`` with every request.
    request_timeout : float
        Seconds before an outbound request is cancelled.
    rest_retry : RetryPolicy
        Retry policy for table/storage/auth calls.
    assistant_retry : RetryPolicy
        Retry policy for the AI assistant (1s, 2s, 4s).
    realtime_reconnect : RetryPolicy
        Reconnect policy per realtime subscription (1s .. 16s, 5 attempts).
    resubscribe_stagger : float
        Pause between channels when every subscription is re-established.
    heartbeat_interval : float
        Seconds between websocket heartbeats.
    connection_check_timeout : float
        Timeout for :meth:`CampusClient.check_connection`.
    sign_in_path : str
        Where the navigator is sent after a forced logout.
    assistant_history_limit : int
        Most recent chat messages forwarded to the assistant.
    realtime_events_per_second : int
        Server-side throttle requested when opening the websocket.
    skew_allowance_seconds : float
        Tolerance when comparing record versions from realtime events.
    """

    supabase_url: str
    anon_key: str
    request_timeout: float = 15.0
    rest_retry: RetryPolicy = dataclasses.field(default_factory=RetryPolicy)
    assistant_retry: RetryPolicy = dataclasses.field(
        default_factory=lambda: RetryPolicy(max_retries=3, base_delay=1.0, max_delay=4.0)
    )
    realtime_reconnect: RetryPolicy = dataclasses.field(
        default_factory=lambda: RetryPolicy(max_retries=5, base_delay=1.0, max_delay=16.0)
    )
    resubscribe_stagger: float = 0.1
    heartbeat_interval: float = 25.0
    connection_check_timeout: float = 5.0
    sign_in_path: str = "/auth"
    assistant_history_limit: int = 10
    realtime_events_per_second: int = 2
    skew_allowance_seconds: float = 0.0

    def __post_init__(self) -> None:
        if not self.supabase_url or not self.anon_key:
            raise ConfigError("Missing Supabase environment variables")
        if self.request_timeout <= 0:
            raise ConfigError(f"request_timeout must be > 0, got {self.request_timeout}")

    @property
    def base_url(self) -> str:
        return self.supabase_url.rstrip("/")

    @property
    def realtime_url(self) -> str:
        base = self.base_url
        if base.startswith("https://"):
            return "wss://" + base[len("https://") :]
        if base.startswith("http://"):
            return "ws://" + base[len("http://") :]
        return base

    @classmethod
    def from_env(cls, **overrides: Any) -> CampusConfig:
        """Create configuration from environment variables.

        Reads ``SUPABASE_URL`` and ``SUPABASE_ANON_KEY`` plus optional
        ``CAMPUS_*`` tuning variables.  Explicit keyword arguments override
        environment values.

        Raises
        ------
        ConfigError
            If the project URL or anon key is missing.
        """
        env = os.environ

        config_kwargs: dict[str, Any] = {
            "supabase_url": env.get("SUPABASE_URL", ""),
            "anon_key": env.get("SUPABASE_ANON_KEY", ""),
        }

        _ENV_FLOAT_MAP = {
            "CAMPUS_REQUEST_TIMEOUT": "request_timeout",
            "CAMPUS_RESUBSCRIBE_STAGGER": "resubscribe_stagger",
            "CAMPUS_HEARTBEAT_INTERVAL": "heartbeat_interval",
            "CAMPUS_CONNECTION_CHECK_TIMEOUT": "connection_check_timeout",
            "CAMPUS_SKEW_ALLOWANCE": "skew_allowance_seconds",
        }
        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = float(val)

        history_env = env.get("CAMPUS_ASSISTANT_HISTORY_LIMIT")
        if history_env is not None and "assistant_history_limit" not in overrides:
            config_kwargs["assistant_history_limit"] = int(history_env)

        sign_in_env = env.get("CAMPUS_SIGN_IN_PATH")
        if sign_in_env is not None and "sign_in_path" not in overrides:
            config_kwargs["sign_in_path"] = sign_in_env

        retries_env = env.get("CAMPUS_MAX_RETRIES")
        if retries_env is not None and "rest_retry" not in overrides:
            config_kwargs["rest_retry"] = RetryPolicy(max_retries=int(retries_env))

        config_kwargs.update(overrides)
        return cls(**config_kwargs)
