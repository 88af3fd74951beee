"""
Gateway configuration.

Built once at startup from environment variables and handed to the
gateway. Nothing here is mutated while requests are being served.

Environment Variables:
    UPSTREAM_URL         - Fixed upstream origin (default: https://www.example.com)
    BLOCKED_IPS          - Comma-separated client IPs to reject
    BLOCKED_REGIONS      - Comma-separated ISO 3166-1 alpha-2 codes to reject
    RATE_LIMIT_ENABLED   - Enable the per-IP rate limit (default: true)
    RATE_LIMIT_REQUESTS  - Max requests per window (default: 30)
    RATE_LIMIT_WINDOW    - Window length in seconds (default: 60)
    RATE_LIMIT_STRATEGY  - best_effort or atomic (default: best_effort)
    LOG_REQUESTS         - Emit structured request events (default: true)
    CLIENT_IP_HEADER     - Trusted client IP header (default: CF-Connecting-IP)
    REGION_HEADER        - Trusted client region header (default: CF-IPCountry)
    PROXY_MARKER         - Value of the X-Proxy-By response header
    UPSTREAM_TIMEOUT     - Upstream connect/read timeout in seconds (default: 30)
    REDIS_URL            - Rate-limit store; in-process memory when unset
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional
from urllib.parse import urlsplit

STRATEGIES = ("best_effort", "atomic")


class ConfigError(ValueError):
    """Raised when the environment holds an unusable setting."""


@dataclass(frozen=True)
class RateLimitSettings:
    enabled: bool = True
    max_requests: int = 30
    window_seconds: int = 60
    strategy: str = "best_effort"

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ConfigError(f"max_requests must be >= 1, got {self.max_requests}")
        if self.window_seconds < 1:
            raise ConfigError(f"window_seconds must be >= 1, got {self.window_seconds}")
        if self.strategy not in STRATEGIES:
            raise ConfigError(f"unknown rate limit strategy: {self.strategy!r}")


@dataclass(frozen=True)
class GatewayConfig:
    upstream: str = "https://www.example.com"
    blocked_ips: frozenset = frozenset()
    blocked_regions: frozenset = frozenset()
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    log_enabled: bool = True
    client_ip_header: str = "CF-Connecting-IP"
    region_header: str = "CF-IPCountry"
    proxy_marker: str = "Edge-Gateway"
    upstream_timeout: float = 30.0
    redis_url: Optional[str] = None

    def __post_init__(self) -> None:
        parts = urlsplit(self.upstream)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ConfigError(f"upstream must be an http(s) origin, got {self.upstream!r}")
        # Accept any iterable for the deny sets but always store frozensets
        object.__setattr__(self, "blocked_ips", frozenset(self.blocked_ips))
        object.__setattr__(self, "blocked_regions", frozenset(self.blocked_regions))

    @property
    def upstream_origin(self) -> str:
        """Scheme and host of the upstream; its own path is always replaced."""
        parts = urlsplit(self.upstream)
        return f"{parts.scheme}://{parts.netloc}"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GatewayConfig":
        env = os.environ if environ is None else environ

        rate_limit = RateLimitSettings(
            enabled=_bool(env, "RATE_LIMIT_ENABLED", True),
            max_requests=_int(env, "RATE_LIMIT_REQUESTS", 30),
            window_seconds=_int(env, "RATE_LIMIT_WINDOW", 60),
            strategy=env.get("RATE_LIMIT_STRATEGY", "best_effort").strip().lower(),
        )

        return cls(
            upstream=env.get("UPSTREAM_URL", "https://www.example.com"),
            blocked_ips=_csv(env.get("BLOCKED_IPS", "")),
            blocked_regions={r.upper() for r in _csv(env.get("BLOCKED_REGIONS", ""))},
            rate_limit=rate_limit,
            log_enabled=_bool(env, "LOG_REQUESTS", True),
            client_ip_header=env.get("CLIENT_IP_HEADER", "CF-Connecting-IP"),
            region_header=env.get("REGION_HEADER", "CF-IPCountry"),
            proxy_marker=env.get("PROXY_MARKER", "Edge-Gateway"),
            upstream_timeout=_float(env, "UPSTREAM_TIMEOUT", 30.0),
            redis_url=env.get("REDIS_URL") or None,
        )


# =============================================================================
# Parsing helpers
# =============================================================================

def _csv(raw: str) -> set[str]:
    return {item.strip() for item in raw.split(",") if item.strip()}


def _bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value not in ("true", "false"):
        raise ConfigError(f"{name} must be 'true' or 'false', got {raw!r}")
    return value == "true"


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
