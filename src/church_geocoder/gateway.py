"""
Church Geocoder — Persistence Gateway
======================================
The pipeline's only view of the persistence store: fetch candidate records,
write results back, and track failures and permanent skips.

Design:
    * :class:`Record` — one church property awaiting coordinates.
    * :class:`SkipReason` — structured payload stored when a record is
      permanently excluded.
    * :class:`RecordFilter` — optional state/status allow-lists and a cap.
    * :class:`PersistenceGateway` (ABC) — the asynchronous interface the
      batch processor consumes.
    * :class:`SupabaseGateway` — implementation backed by a Supabase
      (PostgREST) table, calling the blocking client from worker threads.

Every error leaving a gateway is a
:class:`~church_geocoder.exceptions.TransientPersistenceError` or a
:class:`~church_geocoder.exceptions.PermanentPersistenceError`; the decision
is made once, here, from the exception type and error code.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from church_geocoder.config import Credentials, RunConfig
from church_geocoder.exceptions import (
    PermanentPersistenceError,
    PersistenceError,
    SchemaValidationError,
    TransientPersistenceError,
)
from church_geocoder.geocoder import GeocodeResult

logger = logging.getLogger("church_geocoder.gateway")


def utc_timestamp() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


class SkipCause(str, Enum):
    """Why a record was permanently excluded from geocoding."""

    INCOMPLETE_ADDRESS = "incomplete_address"
    CONSECUTIVE_FAILURES = "consecutive_geocoding_failures"


@dataclass(frozen=True)
class SkipReason:
    """Structured reason stored alongside a skipped record.

    Attributes:
        cause: The enumerated cause.
        detail: Supporting fields, e.g. ``missing_fields`` or ``failures``.
        timestamp: UTC ISO 8601 time the skip was decided.
    """

    cause: SkipCause
    detail: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.cause.value, **self.detail, "timestamp": self.timestamp}

    @classmethod
    def incomplete_address(cls, record: "Record", missing: list[str]) -> "SkipReason":
        return cls(
            SkipCause.INCOMPLETE_ADDRESS,
            {
                "missing_fields": list(missing),
                "provided_data": {
                    "address": record.address or None,
                    "city": record.city or None,
                    "state": record.state or None,
                },
            },
        )

    @classmethod
    def consecutive_failures(cls, record: "Record", failures: int, last_error: str) -> "SkipReason":
        return cls(
            SkipCause.CONSECUTIVE_FAILURES,
            {
                "failures": failures,
                "last_error": last_error,
                "address": record.full_address,
            },
        )


@dataclass
class Record:
    """One church property as read from the store.

    Attributes:
        id: Stable identifier (the ``gcfa`` number).
        name: Display name, used in log lines.
        address: Street address line.
        city: City name.
        state: State name or abbreviation.
        status: Property status, used by the status filter.
        latitude: Stored latitude; non-null means already geocoded.
        longitude: Stored longitude.
        skip: Permanent exclusion flag.
        skip_reason: Parsed skip payload, if any.
        failure_count: Unsuccessful geocoding attempts so far.
    """

    id: str
    name: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    status: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    skip: bool = False
    skip_reason: dict[str, Any] | None = None
    failure_count: int = 0

    @property
    def full_address(self) -> str:
        return f"{self.address or ''}, {self.city or ''}, {self.state or ''}"

    @property
    def label(self) -> str:
        return f"{self.name or 'Unknown'} ({self.id})"

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Record":
        """Build a record from a ``umc_locations`` row."""
        details = row.get("details") or {}
        skip_reason = row.get("skip_reason")
        if isinstance(skip_reason, str):
            try:
                skip_reason = json.loads(skip_reason)
            except ValueError:
                skip_reason = {"reason": skip_reason}
        return cls(
            id=str(row["gcfa"]),
            name=row.get("name"),
            address=row.get("address"),
            city=row.get("city"),
            state=row.get("state"),
            status=row.get("status"),
            latitude=row.get("latitude"),
            longitude=row.get("longitude"),
            skip=bool(row.get("skip_geocoding")),
            skip_reason=skip_reason,
            failure_count=int(details.get("geocoding_failures") or 0),
        )


@dataclass(frozen=True)
class RecordFilter:
    """Which pending records to fetch.

    Attributes:
        states: Allow-list of states (empty = all).
        statuses: Allow-list of statuses (empty = all).
        limit: Maximum records to return; ``0`` means unlimited.
    """

    states: tuple[str, ...] = ()
    statuses: tuple[str, ...] = ()
    limit: int = 0

    @classmethod
    def from_config(cls, config: RunConfig) -> "RecordFilter":
        return cls(states=config.states, statuses=config.statuses, limit=config.max_records)


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class PersistenceGateway(ABC):
    """Operations the pipeline needs from the persistence store.

    Implementations must raise only tagged
    :class:`~church_geocoder.exceptions.PersistenceError` subclasses and must
    tolerate concurrent calls for *different* record ids.
    """

    @abstractmethod
    async def fetch_pending(self, record_filter: RecordFilter) -> list[Record]:
        """Return records with no coordinates and ``skip`` unset."""

    @abstractmethod
    async def write_result(self, record_id: str, result: GeocodeResult) -> None:
        """Store coordinates and geocoding metadata for *record_id*."""

    @abstractmethod
    async def increment_failure_count(self, record_id: str, last_error: str) -> int:
        """Add one to the record's failure counter and return the new value."""

    @abstractmethod
    async def mark_skipped(self, record_id: str, reason: SkipReason) -> None:
        """Set the permanent skip flag with a structured reason."""

    @abstractmethod
    async def count_geocoded(self) -> int:
        """Number of records that have coordinates."""

    @abstractmethod
    async def count_total(self) -> int:
        """Number of records in the store."""

    @abstractmethod
    async def count_skipped(self) -> int:
        """Number of records permanently skipped."""

    @abstractmethod
    async def count_low_confidence(self) -> int:
        """Number of stored results flagged ``low_confidence``."""

    async def validate_schema(self) -> None:
        """Check that the store has what the pipeline needs.

        Raises:
            SchemaValidationError: If a required column is missing.
        """


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

# PostgREST / PostgreSQL codes worth retrying: connection failures, lock and
# serialization conflicts, resource exhaustion, shutdowns and timeouts.
_TRANSIENT_CODE_PREFIXES = ("08", "53", "57P")
_TRANSIENT_CODES = {
    "40001", "40P01", "57014",
    "PGRST000", "PGRST001", "PGRST002", "PGRST003",
    "408", "429", "500", "502", "503", "504",
}


def classify_persistence_error(exc: BaseException, action: str) -> PersistenceError:
    """Turn a client-library exception into a tagged persistence error.

    Args:
        exc: The exception raised by the Supabase/PostgREST client.
        action: Short description of what was being attempted.

    Returns:
        A :class:`TransientPersistenceError` or :class:`PermanentPersistenceError`.
    """
    if isinstance(exc, PersistenceError):
        return exc
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return TransientPersistenceError(f"{action} failed: {exc}")
    if isinstance(exc, APIError):
        code = str(exc.code or "")
        message = f"{action} failed [{code}]: {exc.message}"
        if code in _TRANSIENT_CODES or code.startswith(_TRANSIENT_CODE_PREFIXES):
            return TransientPersistenceError(message)
        return PermanentPersistenceError(message)
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        message = f"{action} failed: HTTP {status}"
        if str(status) in _TRANSIENT_CODES:
            return TransientPersistenceError(message)
        return PermanentPersistenceError(message)
    return PermanentPersistenceError(f"{action} failed: {exc}")


# ---------------------------------------------------------------------------
# Supabase implementation
# ---------------------------------------------------------------------------


class SupabaseGateway(PersistenceGateway):
    """Gateway over a Supabase table (``umc_locations`` by default).

    The ``supabase`` client is synchronous, so each query runs in a worker
    thread via :func:`asyncio.to_thread`.

    Args:
        client: A configured :class:`supabase.Client`.
        table: Table holding the church property records.
        page_size: Rows per request when fetching; PostgREST caps responses
                   (1000 rows by default) so larger fetches are paged.
    """

    ID_COLUMN = "gcfa"
    REQUIRED_COLUMNS = (
        "gcfa", "name", "address", "city", "state", "status",
        "latitude", "longitude", "skip_geocoding", "skip_reason", "details",
    )
    _FETCH_COLUMNS = "gcfa, name, address, city, state, status, latitude, longitude, skip_geocoding, details"

    def __init__(self, client: Client, table: str = "umc_locations", page_size: int = 1000) -> None:
        self.client = client
        self.table = table
        self.page_size = page_size

    @classmethod
    def from_credentials(cls, credentials: Credentials, **kwargs: Any) -> "SupabaseGateway":
        """Create the Supabase client from *credentials*."""
        return cls(create_client(credentials.supabase_url, credentials.supabase_key), **kwargs)

    def _query(self) -> Any:
        return self.client.table(self.table)

    async def _execute(self, query: Any, action: str) -> Any:
        try:
            return await asyncio.to_thread(query.execute)
        except (APIError, httpx.HTTPError, OSError) as exc:
            raise classify_persistence_error(exc, action) from exc

    # ------------------------------------------------------------------
    # PersistenceGateway implementation
    # ------------------------------------------------------------------

    async def validate_schema(self) -> None:
        query = self._query().select(", ".join(self.REQUIRED_COLUMNS)).limit(1)
        try:
            await self._execute(query, "Schema check")
        except PersistenceError as exc:
            raise SchemaValidationError(self.table, exc.message) from exc
        logger.info("All required columns exist in the %s table.", self.table)

    async def fetch_pending(self, record_filter: RecordFilter) -> list[Record]:
        if record_filter.states:
            logger.info("Filtering by states: %s", ", ".join(record_filter.states))
        if record_filter.statuses:
            logger.info("Filtering by statuses: %s", ", ".join(record_filter.statuses))
        if record_filter.limit > 0:
            logger.info("Limiting to %d records", record_filter.limit)
        else:
            logger.info("Fetching ALL pending records (no limit)")

        records: list[Record] = []
        offset = 0
        while True:
            page = self.page_size
            if record_filter.limit > 0:
                page = min(page, record_filter.limit - len(records))
                if page <= 0:
                    break

            query = (
                self._query()
                .select(self._FETCH_COLUMNS)
                .is_("latitude", "null")
                .eq("skip_geocoding", False)
            )
            if record_filter.states:
                query = query.in_("state", list(record_filter.states))
            if record_filter.statuses:
                query = query.in_("status", list(record_filter.statuses))
            query = query.order(self.ID_COLUMN).range(offset, offset + page - 1)

            response = await self._execute(query, "Fetch pending records")
            rows = response.data or []
            records.extend(Record.from_row(row) for row in rows)
            if len(rows) < page:
                break
            offset += page

        return records

    async def write_result(self, record_id: str, result: GeocodeResult) -> None:
        payload = {
            "latitude": result.latitude,
            "longitude": result.longitude,
            "geocoded_address": result.formatted_address,
            "details": {
                "geocoding_data": result.to_dict(),
                "geocoding_timestamp": utc_timestamp(),
            },
        }
        query = (
            self._query()
            .update(payload)
            .eq(self.ID_COLUMN, record_id)
        )
        response = await self._execute(query, f"Update location {record_id}")
        if not response.data:
            raise PermanentPersistenceError(f"Update location {record_id} matched no rows")

    async def increment_failure_count(self, record_id: str, last_error: str) -> int:
        query = self._query().select("details").eq(self.ID_COLUMN, record_id).limit(1)
        response = await self._execute(query, f"Read failure count for {record_id}")
        rows = response.data or []
        details = dict((rows[0].get("details") if rows else None) or {})

        failures = int(details.get("geocoding_failures") or 0) + 1
        details.update(
            geocoding_failures=failures,
            last_geocoding_attempt=utc_timestamp(),
            last_geocoding_error=last_error,
        )
        update = self._query().update({"details": details}).eq(self.ID_COLUMN, record_id)
        await self._execute(update, f"Update failure count for {record_id}")
        return failures

    async def mark_skipped(self, record_id: str, reason: SkipReason) -> None:
        query = (
            self._query()
            .update({"skip_geocoding": True, "skip_reason": json.dumps(reason.to_dict())})
            .eq(self.ID_COLUMN, record_id)
        )
        await self._execute(query, f"Mark location {record_id} to skip")
        logger.info(
            "Marked location %s to be skipped in future runs due to %s",
            record_id, reason.cause.value,
        )

    async def _count(
        self,
        action: str,
        *,
        geocoded: bool = False,
        skipped: bool = False,
        low_confidence: bool = False,
    ) -> int:
        query = self._query().select(self.ID_COLUMN, count="exact", head=True)
        if geocoded:
            query = query.not_.is_("latitude", "null")
        if skipped:
            query = query.eq("skip_geocoding", True)
        if low_confidence:
            query = query.eq("details->geocoding_data->>low_confidence", "true")
        response = await self._execute(query, action)
        return int(response.count or 0)

    async def count_geocoded(self) -> int:
        return await self._count("Count geocoded", geocoded=True)

    async def count_total(self) -> int:
        return await self._count("Count total")

    async def count_skipped(self) -> int:
        return await self._count("Count skipped", skipped=True)

    async def count_low_confidence(self) -> int:
        return await self._count("Count low confidence", low_confidence=True)
