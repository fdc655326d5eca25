from __future__ import annotations

import json
import os
from typing import Any, Dict

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS


class RateLimitRule(BaseModel):
    """A named fixed-window rule such as ``auth.signIn``.

    Rules are loaded once at startup and never mutated afterwards.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    window_ms: int = Field(..., gt=0)
    max_requests: int = Field(..., gt=0)
    message: str = "Rate limit exceeded, please try again later"


def default_rate_limit_rules() -> Dict[str, RateLimitRule]:
    rules = [
        RateLimitRule(
            name="auth.signIn",
            window_ms=15 * MINUTE_MS,
            max_requests=5,
            message="Too many login attempts, please try again later",
        ),
        RateLimitRule(
            name="auth.signUp",
            window_ms=HOUR_MS,
            max_requests=3,
            message="Too many registration attempts, please try again later",
        ),
        RateLimitRule(
            name="auth.resetPassword",
            window_ms=HOUR_MS,
            max_requests=3,
            message="Too many password reset attempts, please try again later",
        ),
        RateLimitRule(
            name="api.general",
            window_ms=15 * MINUTE_MS,
            max_requests=100,
            message="Rate limit exceeded, please try again later",
        ),
        RateLimitRule(
            name="upload.avatar",
            window_ms=HOUR_MS,
            max_requests=10,
            message="Too many upload attempts, please try again later",
        ),
        RateLimitRule(
            name="ip.global",
            window_ms=15 * MINUTE_MS,
            max_requests=1000,
            message="IP rate limit exceeded",
        ),
    ]
    return {rule.name: rule for rule in rules}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication-defense layer."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    use_memory_cache: bool = env_field(False, "USE_MEMORY_CACHE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and runtime resets.",
    )

    # Brute-force lockout
    brute_force_protection_enabled: bool = env_field(True, "BRUTE_FORCE_PROTECTION_ENABLED")
    max_failed_attempts: int = env_field(5, "MAX_FAILED_ATTEMPTS")
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES")

    # Sessions
    session_duration_seconds: int = env_field(30 * 24 * 60 * 60, "SESSION_DURATION_SECONDS")
    max_sessions_per_user: int = env_field(10, "MAX_SESSIONS_PER_USER")

    # CSRF
    csrf_token_ttl_minutes: int = env_field(60, "CSRF_TOKEN_TTL_MINUTES")
    csrf_sweep_interval_seconds: int = env_field(
        300,
        "CSRF_SWEEP_INTERVAL_SECONDS",
        description="Background sweep interval for expired CSRF tokens; 0 disables the sweeper",
    )

    # Rate limiting
    rate_limiting_enabled: bool = env_field(True, "RATE_LIMITING_ENABLED")
    rate_limit_rules: Dict[str, RateLimitRule] = env_field(
        None,
        "RATE_LIMIT_RULES",
        validate_default=True,
        description="JSON object of rule name -> {window_ms, max_requests, message}; merged over defaults",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "max_failed_attempts",
        "lockout_duration_minutes",
        "session_duration_seconds",
        "max_sessions_per_user",
        "csrf_token_ttl_minutes",
    )
    @classmethod
    def _ensure_positive(cls, value: int, info) -> int:
        if value < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return value

    @field_validator("csrf_sweep_interval_seconds")
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("csrf_sweep_interval_seconds must be >= 0")
        return value

    @field_validator("rate_limit_rules", mode="before")
    @classmethod
    def _parse_rules(cls, value: Any) -> Dict[str, Any]:
        rules: Dict[str, Any] = {
            name: rule.model_dump() for name, rule in default_rate_limit_rules().items()
        }
        if value is None or value == "":
            return rules
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise ValueError(f"RATE_LIMIT_RULES is not valid JSON: {exc}") from exc
        if not isinstance(value, dict):
            raise ValueError("rate_limit_rules must be a mapping of rule name to rule")
        for name, raw in value.items():
            if isinstance(raw, RateLimitRule):
                raw = raw.model_dump()
            if not isinstance(raw, dict):
                raise ValueError(f"rate limit rule {name!r} must be an object")
            base = rules.get(name, {})
            rules[name] = {**base, **raw, "name": name}
        return rules

    @model_validator(mode="after")
    def _check_rule_names(self) -> "Settings":
        for name, rule in self.rate_limit_rules.items():
            if rule.name != name:
                raise ValueError(f"rate limit rule key {name!r} does not match rule name {rule.name!r}")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
