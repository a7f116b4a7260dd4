"""
Location Errors

Every error a caller can see carries a machine-readable `kind` and a
human-readable message. The HTTP layer maps kinds to status codes.

Store failures (StoreError, DuplicateLocationError) live with the store
in restrooms.db.store but share this base.
"""

from typing import Any


class LocationError(Exception):
    """Base exception for restroom directory errors."""
    kind = "location-error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFoundError(LocationError):
    """Raised when no resource matches the requested id."""
    kind = "not-found"


class InvalidDataError(LocationError):
    """Raised when a remote candidate has no usable external id."""
    kind = "invalid-data"


class ValidationError(LocationError):
    """Raised when input to insert, update or a query is malformed."""
    kind = "validation-error"


class InvalidTokenError(LocationError):
    """Raised when the anti-abuse token is rejected."""
    kind = "invalid-token"


class RemoteFetchError(LocationError):
    """Raised when the remote source call fails (network, non-2xx, bad payload)."""
    kind = "remote-fetch-error"


class RemoteTimeoutError(RemoteFetchError):
    """Raised when the remote source exceeds its timeout budget."""
    kind = "remote-timeout"


class GeocodingError(LocationError):
    """Raised when the geocoding provider fails."""
    kind = "geocoding-error"


def validation_error_from_pydantic(exc) -> ValidationError:
    """Flatten a pydantic ValidationError into ours."""
    problems = [
        f"{'.'.join(str(p) for p in err.get('loc', ())) or 'input'}: {err.get('msg')}"
        for err in exc.errors()
    ]
    return ValidationError("; ".join(problems), errors=problems)
