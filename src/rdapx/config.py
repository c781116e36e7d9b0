"""
Configuration management for the RDAP resolution engine.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional


def _default_cache_directory() -> Optional[Path]:
    configured = os.getenv("RDAPX_CACHE_DIR")
    if configured is not None:
        return Path(configured).expanduser() if configured else None
    base = os.getenv("XDG_CACHE_HOME") or os.path.join("~", ".cache")
    return Path(base).expanduser() / "rdapx"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class Config:
    """Configuration for the RDAP bulk resolution engine."""

    # Cache configuration
    cache_directory: Optional[Path] = field(default_factory=_default_cache_directory)
    use_cache: bool = field(default_factory=lambda: _env_bool("RDAPX_USE_CACHE", "true"))
    cache_ttl: int = field(
        default_factory=lambda: int(os.getenv("RDAPX_CACHE_TTL", "86400"))
    )  # 24 hours
    negative_cache_ttl: int = field(
        default_factory=lambda: int(os.getenv("RDAPX_NEGATIVE_CACHE_TTL", "0"))
    )
    cache_max_size: int = field(
        default_factory=lambda: int(os.getenv("RDAPX_CACHE_MAX_SIZE", "10000"))
    )

    # Timeout configuration (seconds, per network attempt)
    rdap_timeout: float = field(
        default_factory=lambda: float(os.getenv("RDAPX_TIMEOUT", "8"))
    )

    # Concurrent lookup configuration
    max_concurrent_lookups: int = field(
        default_factory=lambda: int(os.getenv("RDAPX_CONCURRENCY", "8"))
    )

    # Retry configuration
    max_retries: int = field(
        default_factory=lambda: int(os.getenv("RDAPX_MAX_RETRIES", "3"))
    )
    retry_delay: float = field(
        default_factory=lambda: float(os.getenv("RDAPX_RETRY_DELAY", "0.5"))
    )
    max_retry_delay: float = field(
        default_factory=lambda: float(os.getenv("RDAPX_MAX_RETRY_DELAY", "30"))
    )

    # Referral configuration
    max_referral_hops: int = field(
        default_factory=lambda: int(os.getenv("RDAPX_MAX_REFERRAL_HOPS", "3"))
    )
    referral_relations: tuple[str, ...] = field(
        default_factory=lambda: tuple(
            rel.strip()
            for rel in os.getenv("RDAPX_REFERRAL_RELATIONS", "related").split(",")
            if rel.strip()
        )
    )

    # Bootstrap registry
    bootstrap_base_url: str = field(
        default_factory=lambda: os.getenv(
            "RDAPX_BOOTSTRAP_URL", "https://data.iana.org/rdap/"
        )
    )

    # Connection pooling
    user_agent: str = field(
        default_factory=lambda: os.getenv("RDAPX_USER_AGENT", "rdapx/0.2")
    )
    max_connections: int = field(
        default_factory=lambda: int(os.getenv("RDAPX_MAX_CONNECTIONS", "100"))
    )
    max_keepalive_connections: int = field(
        default_factory=lambda: int(os.getenv("RDAPX_MAX_KEEPALIVE_CONNECTIONS", "20"))
    )

    # Logging configuration
    log_level: str = field(
        default_factory=lambda: os.getenv("RDAPX_LOG_LEVEL", "WARNING").upper()
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary."""
        return {
            "cache_directory": str(self.cache_directory) if self.cache_directory else None,
            "use_cache": self.use_cache,
            "cache_ttl": self.cache_ttl,
            "negative_cache_ttl": self.negative_cache_ttl,
            "cache_max_size": self.cache_max_size,
            "rdap_timeout": self.rdap_timeout,
            "max_concurrent_lookups": self.max_concurrent_lookups,
            "max_retries": self.max_retries,
            "retry_delay": self.retry_delay,
            "max_retry_delay": self.max_retry_delay,
            "max_referral_hops": self.max_referral_hops,
            "referral_relations": list(self.referral_relations),
            "bootstrap_base_url": self.bootstrap_base_url,
            "user_agent": self.user_agent,
            "max_connections": self.max_connections,
            "max_keepalive_connections": self.max_keepalive_connections,
            "log_level": self.log_level,
        }

    @classmethod
    def from_env(cls) -> "Config":
        """Create config from environment variables."""
        return cls()

    def validate(self) -> None:
        """Validate configuration values."""
        if self.rdap_timeout <= 0:
            raise ValueError(f"Invalid RDAP timeout: {self.rdap_timeout}")

        if self.cache_ttl < 0:
            raise ValueError(f"Invalid cache TTL: {self.cache_ttl}")

        if self.negative_cache_ttl < 0:
            raise ValueError(f"Invalid negative cache TTL: {self.negative_cache_ttl}")

        if self.cache_max_size <= 0:
            raise ValueError(f"Invalid cache max size: {self.cache_max_size}")

        if self.max_concurrent_lookups <= 0:
            raise ValueError(
                f"Invalid concurrency limit: {self.max_concurrent_lookups}"
            )

        if self.max_retries < 0:
            raise ValueError(f"Invalid max retries: {self.max_retries}")

        if self.retry_delay < 0 or self.max_retry_delay < 0:
            raise ValueError(
                f"Invalid retry delay: {self.retry_delay}/{self.max_retry_delay}"
            )

        if self.max_referral_hops < 0:
            raise ValueError(f"Invalid referral hop limit: {self.max_referral_hops}")

        if not self.bootstrap_base_url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid bootstrap URL: {self.bootstrap_base_url}")

        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ValueError(f"Invalid log level: {self.log_level}")
