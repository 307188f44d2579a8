"""
Shared fixtures — Church Geocoder tests
========================================
In-memory stand-ins for the persistence store and the geocoding provider,
so the pipeline can be exercised without Supabase or network access.
"""

from __future__ import annotations

import time
from collections import Counter, defaultdict
from typing import Callable

import pytest

from church_geocoder.config import RunConfig
from church_geocoder.exceptions import PersistenceError
from church_geocoder.gateway import PersistenceGateway, Record, RecordFilter, SkipReason
from church_geocoder.geocoder import Candidate, GeocodeResult, Geocoder, GeocoderBackend
from church_geocoder.processor import BatchProcessor
from church_geocoder.rate_limiter import RateLimiter
from church_geocoder.reporter import Reporter

# 600 000 req/min gives a 1 ms dispatch delay.
FAST_RPM = 600_000


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def candidate(
    longitude: object = -86.7816,
    latitude: object = 36.1627,
    relevance: float = 0.95,
    formatted_address: str | None = "Nashville, Tennessee, United States",
) -> Candidate:
    """Build a provider candidate with sensible defaults."""
    return Candidate(
        longitude=longitude,
        latitude=latitude,
        relevance=relevance,
        formatted_address=formatted_address,
        postal_code="37201",
        raw={"source": "test"},
    )


class ScriptedBackend(GeocoderBackend):
    """Provider backend answering from a script keyed by query string.

    A script entry is either a list of candidates or an exception instance
    to raise.  Queries not in the script get one good candidate.
    """

    name = "Scripted"

    def __init__(self, script: dict[str, object] | None = None) -> None:
        self.script = dict(script or {})
        self.calls: list[str] = []
        self.call_times: list[float] = []

    def lookup(self, query: str) -> list[Candidate]:
        self.calls.append(query)
        self.call_times.append(time.monotonic())
        answer = self.script.get(query, [candidate()])
        if isinstance(answer, BaseException):
            raise answer
        return list(answer)  # type: ignore[arg-type]


class FakeGateway(PersistenceGateway):
    """In-memory persistence gateway.

    Args:
        records: Initial contents of the store.
        write_failures: Per record id, exceptions the next ``write_result``
                        calls raise, in order.
    """

    def __init__(
        self,
        records: list[Record] | None = None,
        write_failures: dict[str, list[PersistenceError]] | None = None,
    ) -> None:
        self.rows: dict[str, Record] = {r.id: r for r in records or []}
        self.written: dict[str, GeocodeResult] = {}
        self.skipped: dict[str, SkipReason] = {}
        self.last_errors: dict[str, str] = {}
        self.write_attempts: Counter[str] = Counter()
        self.write_failures: dict[str, list[PersistenceError]] = defaultdict(list, write_failures or {})
        self.count_error: PersistenceError | None = None
        self.mark_skipped_error: PersistenceError | None = None
        self.schema_checked = False

    async def fetch_pending(self, record_filter: RecordFilter) -> list[Record]:
        pending = [
            r for r in sorted(self.rows.values(), key=lambda r: r.id)
            if r.latitude is None and not r.skip
            and (not record_filter.states or r.state in record_filter.states)
            and (not record_filter.statuses or r.status in record_filter.statuses)
        ]
        if record_filter.limit > 0:
            pending = pending[:record_filter.limit]
        return pending

    async def write_result(self, record_id: str, result: GeocodeResult) -> None:
        self.write_attempts[record_id] += 1
        if self.write_failures[record_id]:
            raise self.write_failures[record_id].pop(0)
        self.written[record_id] = result
        self.rows[record_id].latitude = result.latitude
        self.rows[record_id].longitude = result.longitude

    async def increment_failure_count(self, record_id: str, last_error: str) -> int:
        record = self.rows[record_id]
        record.failure_count += 1
        self.last_errors[record_id] = last_error
        return record.failure_count

    async def mark_skipped(self, record_id: str, reason: SkipReason) -> None:
        if self.mark_skipped_error is not None:
            raise self.mark_skipped_error
        self.skipped[record_id] = reason
        self.rows[record_id].skip = True
        self.rows[record_id].skip_reason = reason.to_dict()

    async def _count(self, predicate: Callable[[Record], bool]) -> int:
        if self.count_error is not None:
            raise self.count_error
        return sum(1 for r in self.rows.values() if predicate(r))

    async def count_geocoded(self) -> int:
        return await self._count(lambda r: r.latitude is not None)

    async def count_total(self) -> int:
        return await self._count(lambda r: True)

    async def count_skipped(self) -> int:
        return await self._count(lambda r: r.skip)

    async def count_low_confidence(self) -> int:
        return await self._count(
            lambda r: r.id in self.written and self.written[r.id].low_confidence
        )

    async def validate_schema(self) -> None:
        self.schema_checked = True


def church(record_id: str, address: str | None = "100 Church St", city: str | None = "Nashville",
           state: str | None = "TN", **kwargs: object) -> Record:
    """Build a pending record."""
    return Record(id=record_id, name=f"Church {record_id}", address=address, city=city,
                  state=state, **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def fast_config() -> RunConfig:
    """Small batches and a 1 ms rate limit so tests run quickly."""
    return RunConfig(batch_size=2, max_concurrent=2, requests_per_minute=FAST_RPM, max_records=0)


@pytest.fixture()
def make_processor(tmp_path, fast_config):
    """Factory building a :class:`BatchProcessor` over the given fakes."""

    def _make(
        gateway: FakeGateway,
        backend: GeocoderBackend | None = None,
        config: RunConfig | None = None,
    ) -> BatchProcessor:
        config = config or fast_config
        geocoder = Geocoder(
            backend or ScriptedBackend(),
            RateLimiter(config.requests_per_minute),
            min_relevance=config.min_relevance,
        )
        reporter = Reporter(tmp_path / "logs", gateway)
        return BatchProcessor(geocoder, gateway, reporter, config, write_retry_delay=0)

    return _make
