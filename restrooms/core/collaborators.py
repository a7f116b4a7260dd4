"""
External Collaborators

Interfaces the core depends on, with the Google-backed implementations
used in deployment:

    Geocoder        geocode_address(text) -> Coordinates | None
    TokenValidator  validate(token, remote_ip) -> bool

The core only sees the protocols; tests substitute their own.
"""

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from ..observability import get_logger
from .errors import GeocodingError

logger = get_logger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"
DEFAULT_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


class Geocoder(Protocol):
    async def geocode_address(self, address: str) -> Optional[Coordinates]:
        """None when the provider has no match; GeocodingError on failure."""
        ...


class TokenValidator(Protocol):
    async def validate(self, token: Optional[str], remote_ip: Optional[str] = None) -> bool:
        ...


# ============================================================
# GOOGLE GEOCODING
# ============================================================

class GoogleGeocoder:
    """Google Maps Geocoding API."""

    def __init__(self, api_key: Optional[str], transport: Optional[httpx.AsyncBaseTransport] = None):
        self._api_key = api_key
        self._client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, transport=transport)

    async def geocode_address(self, address: str) -> Optional[Coordinates]:
        if not self._api_key:
            raise GeocodingError("geocoding is not configured (GOOGLE_MAPS_API_KEY unset)")

        try:
            response = await self._client.get(
                GEOCODE_URL, params={"address": address, "key": self._api_key}
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise GeocodingError(f"geocoding request failed: {e}") from e
        except ValueError as e:
            raise GeocodingError("geocoding provider returned invalid JSON") from e

        if not isinstance(payload, dict):
            raise GeocodingError("geocoding provider returned a non-object payload")

        status = payload.get("status")
        if status == "ZERO_RESULTS":
            return None
        if status != "OK" or not payload.get("results"):
            raise GeocodingError(
                f"geocoding failed with status {status}",
                provider_status=status,
            )

        try:
            location = payload["results"][0]["geometry"]["location"]
            return Coordinates(latitude=float(location["lat"]), longitude=float(location["lng"]))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise GeocodingError("geocoding result had no coordinates") from e

    async def aclose(self) -> None:
        await self._client.aclose()


class NullGeocoder:
    """Geocoder that never finds anything; submissions keep no position."""

    async def geocode_address(self, address: str) -> Optional[Coordinates]:
        return None


# ============================================================
# RECAPTCHA
# ============================================================

class RecaptchaValidator:
    """
    reCAPTCHA siteverify.

    Without a configured secret, or when Google cannot be reached, every
    token is rejected.
    """

    def __init__(self, secret: Optional[str], transport: Optional[httpx.AsyncBaseTransport] = None):
        self._secret = secret
        self._client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, transport=transport)

    async def validate(self, token: Optional[str], remote_ip: Optional[str] = None) -> bool:
        if not token:
            return False
        if not self._secret:
            logger.warning("RECAPTCHA_SECRET_KEY is not set, rejecting submission")
            return False

        data = {"secret": self._secret, "response": token}
        if remote_ip:
            data["remoteip"] = remote_ip

        try:
            response = await self._client.post(RECAPTCHA_VERIFY_URL, data=data)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error("reCAPTCHA verification failed", error=str(e))
            return False

        return payload.get("success") is True

    async def aclose(self) -> None:
        await self._client.aclose()
