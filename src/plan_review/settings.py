from __future__ import annotations

import ipaddress
import os
from dataclasses import dataclass
from pathlib import Path


_DEFAULT_PLANS_DIR = "~/.plan_review/plans"


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    model_name: str = "gpt-4o"
    temperature: float = 0.2
    request_timeout: int = 120
    max_retries: int = 3
    idle_timeout: float = 600.0
    heartbeat_interval: float = 10.0
    grace_delay: float = 0.5
    host: str = "127.0.0.1"
    plans_dir: str = _DEFAULT_PLANS_DIR

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            model_name=os.getenv("PLAN_REVIEW_MODEL", "gpt-4o"),
            temperature=_get_env_float("PLAN_REVIEW_TEMPERATURE", default=0.2, minimum=0.0, maximum=2.0),
            request_timeout=_get_env_int("PLAN_REVIEW_REQUEST_TIMEOUT", default=120, minimum=1),
            max_retries=_get_env_int("PLAN_REVIEW_MAX_RETRIES", default=3, minimum=0, maximum=20),
            idle_timeout=_get_env_float("PLAN_REVIEW_IDLE_TIMEOUT", default=600.0, minimum=5.0, maximum=86_400.0),
            heartbeat_interval=_get_env_float("PLAN_REVIEW_HEARTBEAT_INTERVAL", default=10.0, minimum=1.0, maximum=3_600.0),
            grace_delay=_get_env_float("PLAN_REVIEW_GRACE_DELAY", default=0.5, minimum=0.0, maximum=10.0),
            host=os.getenv("PLAN_REVIEW_HOST", "127.0.0.1"),
            plans_dir=os.getenv("PLAN_REVIEW_PLANS_DIR", _DEFAULT_PLANS_DIR),
        ).normalized()

    @property
    def plans_path(self) -> Path:
        return Path(self.plans_dir).expanduser()

    @property
    def has_model(self) -> bool:
        return bool(self.model_name.strip())

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration.

        An empty model name is allowed here; it is reported as a configuration
        error when generation is attempted.
        """
        # -- Liveness validation --
        if self.heartbeat_interval * 2 > self.idle_timeout:
            raise ValueError(
                "PLAN_REVIEW_HEARTBEAT_INTERVAL must be at most half of PLAN_REVIEW_IDLE_TIMEOUT, "
                f"got: {self.heartbeat_interval} vs {self.idle_timeout}"
            )
        if self.grace_delay >= self.idle_timeout:
            raise ValueError("PLAN_REVIEW_GRACE_DELAY must be shorter than PLAN_REVIEW_IDLE_TIMEOUT")

        # -- Bind address validation --
        host = self.host.strip()
        if host != "localhost":
            try:
                loopback = ipaddress.ip_address(host).is_loopback
            except ValueError as exc:
                raise ValueError(f"PLAN_REVIEW_HOST must be a loopback address, got: {self.host!r}") from exc
            if not loopback:
                raise ValueError(f"PLAN_REVIEW_HOST must be a loopback address, got: {self.host!r}")

        if not self.plans_dir.strip():
            raise ValueError("PLAN_REVIEW_PLANS_DIR must be non-empty")

        return RuntimeSettings(
            model_name=self.model_name.strip(),
            temperature=self.temperature,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            idle_timeout=self.idle_timeout,
            heartbeat_interval=self.heartbeat_interval,
            grace_delay=self.grace_delay,
            host=host,
            plans_dir=self.plans_dir.strip(),
        )


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed
