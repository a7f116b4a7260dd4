"""
Service Configuration

Environment-driven settings for hydration and the external collaborators.

CONFIGURATION:
- RESTROOMS_ENABLE_HYDRATION: Enable remote backfill (default: false).
  The older ENABLE_HYDRATION name is still honoured.
- RESTROOMS_API_URL: Remote source base URL
- RESTROOMS_API_TIMEOUT_SECONDS: Remote call budget (default: 15)
- RESTROOMS_HYDRATION_PER_PAGE: Candidates per hydration fetch (default: 20)
- RESTROOMS_SPARSITY_THRESHOLD: Local result count that triggers hydration (default: 5)
- GOOGLE_MAPS_API_KEY: Geocoding key (geocoding disabled if unset)
- RECAPTCHA_SECRET_KEY: Anti-abuse secret (submissions rejected if unset)
- RESTROOMS_ADMIN_TOKEN: Shared secret for /api/admin (admin disabled if unset)
- RESTROOMS_ENABLE_TEST_DATA: Allow test-data seeding (default: false)
"""

import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_API_URL = "https://www.refugerestrooms.org/api/v1"

_TRUTHY = ("1", "true", "yes", "on")


def _env_flag(*names: str, default: bool = False) -> bool:
    for name in names:
        value = os.environ.get(name)
        if value is not None and value != "":
            return value.strip().lower() in _TRUTHY
    return default


@dataclass
class HydrationConfig:
    """Configuration for remote hydration."""
    enabled: bool = False
    api_url: str = DEFAULT_API_URL
    timeout_seconds: float = 15.0
    per_page: int = 20
    sparsity_threshold: int = 5

    @classmethod
    def from_env(cls) -> "HydrationConfig":
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_flag("RESTROOMS_ENABLE_HYDRATION", "ENABLE_HYDRATION"),
            api_url=os.environ.get("RESTROOMS_API_URL", DEFAULT_API_URL).rstrip("/"),
            timeout_seconds=float(os.environ.get("RESTROOMS_API_TIMEOUT_SECONDS", "15")),
            per_page=int(os.environ.get("RESTROOMS_HYDRATION_PER_PAGE", "20")),
            sparsity_threshold=int(os.environ.get("RESTROOMS_SPARSITY_THRESHOLD", "5")),
        )


@dataclass
class ServiceConfig:
    """Secrets and switches for the collaborators around the core."""
    google_maps_api_key: Optional[str] = None
    recaptcha_secret_key: Optional[str] = None
    admin_token: Optional[str] = None
    enable_test_data: bool = False

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        return cls(
            google_maps_api_key=os.environ.get("GOOGLE_MAPS_API_KEY") or None,
            recaptcha_secret_key=os.environ.get("RECAPTCHA_SECRET_KEY") or None,
            admin_token=os.environ.get("RESTROOMS_ADMIN_TOKEN") or None,
            enable_test_data=_env_flag("RESTROOMS_ENABLE_TEST_DATA"),
        )
