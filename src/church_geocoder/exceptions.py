"""
Church Geocoder — Custom Exception Hierarchy
=============================================
Every module in the pipeline raises exceptions from this module so callers
can catch them at the right level of granularity.

Hierarchy::

    ChurchGeocoderError                  ← catch-all base
    ├── InputValidationError             ← bad config, credentials, addresses
    │   ├── ConfigError                  ← invalid RunConfig / YAML file
    │   ├── MissingCredentialsError      ← required env vars absent
    │   └── AddressError                 ← incomplete record address
    ├── GeocodingError                   ← provider / parse failures
    │   ├── NoCoordinatesError           ← provider returned zero candidates
    │   ├── InvalidCoordinatesError      ← candidate lacks a numeric lon/lat
    │   └── GeocodingRateLimitError      ← provider quota exceeded
    ├── PersistenceError                 ← persistence gateway failures
    │   ├── TransientPersistenceError    ← worth retrying in-run
    │   ├── PermanentPersistenceError    ← retrying will not help
    │   └── SchemaValidationError        ← required columns missing
    └── OutputWriteError                 ← cannot write logs / summaries

Usage::

    from church_geocoder.exceptions import AddressError

    raise AddressError(["City", "State"])
"""

from __future__ import annotations

from typing import Sequence


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


class ChurchGeocoderError(Exception):
    """Base exception for the church geocoding pipeline.

    Catch this to handle any pipeline-specific error without caring about
    the exact subtype.

    Args:
        message: Human-readable description of the error.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message: str = message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class InputValidationError(ChurchGeocoderError):
    """Raised when the pipeline's inputs fail pre-processing validation.

    This is the parent class for more specific input problems.
    """


class ConfigError(InputValidationError):
    """Raised when a run configuration value or file is invalid."""


class MissingCredentialsError(InputValidationError):
    """Raised when one or more required environment variables are not set.

    Args:
        missing: Names of the variables that are absent or empty.

    Example::

        raise MissingCredentialsError(["SUPABASE_URL", "MAPBOX_ACCESS_TOKEN"])
    """

    def __init__(self, missing: Sequence[str]) -> None:
        super().__init__(
            f"Missing required environment variables: {', '.join(missing)}"
        )
        self.missing: list[str] = list(missing)


class AddressError(InputValidationError):
    """Raised when a record lacks the address components needed to geocode.

    A street address is always required, plus at least one of city or
    state.  This error is detected before any network call and never
    counts against a record's geocoding failure budget.

    Args:
        missing: The missing components, drawn from
                 ``"Address"``, ``"City"`` and ``"State"``.

    Example::

        raise AddressError(["Address"])
    """

    def __init__(self, missing: Sequence[str]) -> None:
        super().__init__(f"Incomplete address, missing: {', '.join(missing)}")
        self.missing: list[str] = list(missing)


# ---------------------------------------------------------------------------
# Geocoding
# ---------------------------------------------------------------------------


class GeocodingError(ChurchGeocoderError):
    """Raised when a geocoding attempt fails for any provider-side reason.

    Every subclass counts against the record's failure budget.

    Args:
        message: Human-readable description of the failure.
        kind: Short machine-readable classification stored in the record's
              failure history (e.g. ``"no_coordinates"``).
    """

    kind_default = "provider_error"

    def __init__(self, message: str, kind: str | None = None) -> None:
        super().__init__(message)
        self.kind: str = kind or self.kind_default


class NoCoordinatesError(GeocodingError):
    """Raised when the provider returns zero candidates for a query."""

    kind_default = "no_coordinates"

    def __init__(self, query: str) -> None:
        super().__init__(f"No results found for '{query}'")
        self.query: str = query


class InvalidCoordinatesError(GeocodingError):
    """Raised when the best candidate's coordinate pair is missing or
    non-numeric.  Such results are never stored."""

    kind_default = "invalid_coordinates"


class GeocodingRateLimitError(GeocodingError):
    """Raised when the geocoding provider returns a rate-limit response.

    Args:
        provider: Name of the geocoding service (e.g. ``"Mapbox"``).
        retry_after: Suggested seconds to wait before retrying, if
                     provided by the API.  ``None`` if unknown.
    """

    kind_default = "rate_limited"

    def __init__(self, provider: str, retry_after: int | None = None) -> None:
        hint = f" Retry after {retry_after}s." if retry_after else ""
        super().__init__(f"Rate limit exceeded for provider '{provider}'.{hint}")
        self.provider: str = provider
        self.retry_after: int | None = retry_after


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class PersistenceError(ChurchGeocoderError):
    """Raised by a persistence gateway.  Gateways always raise one of the
    tagged subclasses so callers never have to inspect message text."""

    transient: bool = False


class TransientPersistenceError(PersistenceError):
    """A persistence failure that may succeed if the operation is retried
    (dropped connection, timeout, busy server)."""

    transient = True


class PermanentPersistenceError(PersistenceError):
    """A persistence failure that will not succeed on retry."""


class SchemaValidationError(PersistenceError):
    """Raised when the backing table lacks a column the pipeline needs.

    Args:
        table: The table that was checked.
        reason: Underlying database error message.
    """

    def __init__(self, table: str, reason: str) -> None:
        super().__init__(f"Schema check failed for table '{table}': {reason}")
        self.table: str = table
        self.reason: str = reason


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


class OutputWriteError(ChurchGeocoderError):
    """Raised when a log or summary file cannot be written.

    Args:
        output_path: String representation of the path that failed.
        reason: Underlying OS error message.

    Example::

        raise OutputWriteError("/read-only/logs/errors.log", "Permission denied")
    """

    def __init__(self, output_path: str, reason: str) -> None:
        super().__init__(
            f"Failed to write output to '{output_path}': {reason}"
        )
        self.output_path: str = output_path
        self.reason: str = reason
