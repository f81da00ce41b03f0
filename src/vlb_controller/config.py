"""Configuration management with validation.

All settings come from the environment and are validated at load time,
so a misconfigured controller refuses to start instead of failing on the
first reconciliation.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from . import __version__


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_API_URL = "https://api.vultr.com"
DEFAULT_METADATA_URL = "http://169.254.169.254"

DEFAULT_RESYNC_INTERVAL_SECONDS = 300
MIN_RESYNC_INTERVAL_SECONDS = 30
MAX_RESYNC_INTERVAL_SECONDS = 3600

DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
MAX_REQUEST_TIMEOUT_SECONDS = 300.0

# Identifier binding retries against object store write conflicts
DEFAULT_BINDING_MAX_ATTEMPTS = 3
MAX_BINDING_MAX_ATTEMPTS = 10
DEFAULT_BINDING_BACKOFF_BASE_SECONDS = 0.1
MAX_BINDING_BACKOFF_BASE_SECONDS = 5.0

# Provider listing page size
LIST_PAGE_SIZE = 25

USER_AGENT_PREFIX = "vultr-lb-controller"

# Input validation patterns
VALID_REGION_PATTERN = r"^[a-z]{3,4}$"
VALID_URL_PATTERN = r"^https?://[^\s/]+(/.*)?$"


@dataclass(frozen=True)
class Config:
    """Controller configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    api_key: str

    # Provider endpoints
    api_url: str = DEFAULT_API_URL
    metadata_url: str = DEFAULT_METADATA_URL
    user_agent: str = f"{USER_AGENT_PREFIX}:{__version__}"

    # Cluster access (empty means in-cluster configuration)
    kubeconfig: str = ""

    # Region override (empty means discover via metadata)
    region: str = ""

    # Timing
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Identifier binding
    binding_max_attempts: int = DEFAULT_BINDING_MAX_ATTEMPTS
    binding_backoff_base_seconds: float = DEFAULT_BINDING_BACKOFF_BASE_SECONDS

    # Logging
    log_json: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.api_key:
            errors.append("VULTR_API_KEY must be set in the environment (use a k8s secret)")

        if not re.match(VALID_URL_PATTERN, self.api_url):
            errors.append(f"API_URL must be an http(s) URL: {self.api_url}")

        if not re.match(VALID_URL_PATTERN, self.metadata_url):
            errors.append(f"METADATA_URL must be an http(s) URL: {self.metadata_url}")

        if self.region and not re.match(VALID_REGION_PATTERN, self.region):
            errors.append(f"VULTR_REGION must be a region code such as 'ewr': {self.region}")

        if not (
            MIN_RESYNC_INTERVAL_SECONDS
            <= self.resync_interval_seconds
            <= MAX_RESYNC_INTERVAL_SECONDS
        ):
            errors.append(
                f"RESYNC_INTERVAL must be between {MIN_RESYNC_INTERVAL_SECONDS} "
                f"and {MAX_RESYNC_INTERVAL_SECONDS} seconds"
            )

        if not (0 < self.request_timeout_seconds <= MAX_REQUEST_TIMEOUT_SECONDS):
            errors.append(
                f"REQUEST_TIMEOUT must be greater than 0 and at most "
                f"{MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if not (1 <= self.binding_max_attempts <= MAX_BINDING_MAX_ATTEMPTS):
            errors.append(f"BINDING_MAX_ATTEMPTS must be between 1 and {MAX_BINDING_MAX_ATTEMPTS}")

        if not (0 <= self.binding_backoff_base_seconds <= MAX_BINDING_BACKOFF_BASE_SECONDS):
            errors.append(
                f"BINDING_BACKOFF_BASE must be between 0 and "
                f"{MAX_BINDING_BACKOFF_BASE_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            VULTR_API_KEY: Provider API token (required)
            API_URL: Provider API base URL (default: https://api.vultr.com)
            CCM_USER_AGENT: Suffix for the User-Agent header
            KUBECONFIG: Path to a kubeconfig; empty uses in-cluster config
            VULTR_REGION: Region override; empty discovers it via metadata
            METADATA_URL: Instance metadata endpoint (default: http://169.254.169.254)
            RESYNC_INTERVAL: Seconds between drift-correction passes (default: 300)
            REQUEST_TIMEOUT: Provider HTTP timeout in seconds (default: 30)
            BINDING_MAX_ATTEMPTS: Identifier annotation write attempts (default: 3)
            BINDING_BACKOFF_BASE: Base backoff between those attempts (default: 0.1)
            LOG_JSON: If "false", log plain text instead of JSON (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        ua = os.environ.get("CCM_USER_AGENT", "")
        user_agent = f"{USER_AGENT_PREFIX}:{ua or __version__}"

        return cls(
            api_key=os.environ.get("VULTR_API_KEY", ""),
            api_url=os.environ.get("API_URL") or DEFAULT_API_URL,
            metadata_url=os.environ.get("METADATA_URL") or DEFAULT_METADATA_URL,
            user_agent=user_agent,
            kubeconfig=os.environ.get("KUBECONFIG", ""),
            region=os.environ.get("VULTR_REGION", "").lower(),
            resync_interval_seconds=get_int("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            request_timeout_seconds=get_float("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            binding_max_attempts=get_int("BINDING_MAX_ATTEMPTS", DEFAULT_BINDING_MAX_ATTEMPTS),
            binding_backoff_base_seconds=get_float(
                "BINDING_BACKOFF_BASE", DEFAULT_BINDING_BACKOFF_BASE_SECONDS
            ),
            log_json=get_bool("LOG_JSON", True),
        )
