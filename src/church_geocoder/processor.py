"""
Church Geocoder — Batch Processor
==================================
Runs the pending records through the geocoder with bounded concurrency and
applies the per-record failure/skip policy.

Execution model:
    Records are split into batches of ``batch_size``; batches are grouped
    into windows of ``max_concurrent``.  All batches in a window run
    concurrently, and every record inside a batch is processed concurrently.
    The next window starts only once the current one has fully drained, so
    at most ``batch_size * max_concurrent`` records are in flight.  Provider
    calls are further paced by the shared rate limiter.

Per-record policy:
    * incomplete address → permanent skip, no network call, failure count
      untouched
    * provider failure → failure count + 1; permanent skip once it reaches
      ``max_failures``
    * success (including low confidence) → coordinates written back, with
      transient database errors retried in-run
    * anything unexpected → logged and counted as a failure for that record
      only

Classes:
    Outcome         The six possible per-record outcomes.
    RecordOutcome   Outcome plus the log line for one record.
    BatchTally      Counts and error lines for one batch.
    RunResult       Aggregated counts for the whole run.
    BatchProcessor  The orchestrator.
"""

from __future__ import annotations

import asyncio
import logging
import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from church_geocoder.config import RunConfig
from church_geocoder.exceptions import AddressError, GeocodingError, PersistenceError
from church_geocoder.gateway import PersistenceGateway, Record, SkipReason, utc_timestamp
from church_geocoder.geocoder import GeocodeResult, Geocoder
from church_geocoder.reporter import Reporter
from church_geocoder.retry import MAX_RETRIES, RETRY_DELAY, retry_transient

logger = logging.getLogger("church_geocoder.processor")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


class Outcome(str, Enum):
    """What happened to one record during a run."""

    SUCCESS = "success"
    LOW_CONFIDENCE = "low_confidence"
    SKIPPED_INCOMPLETE = "skipped_incomplete_address"
    GEOCODE_FAILED = "geocode_failed"
    PERSISTENCE_FAILED = "persistence_failed"
    EXCEPTION = "exception"

    @property
    def succeeded(self) -> bool:
        return self in (Outcome.SUCCESS, Outcome.LOW_CONFIDENCE)

    @property
    def skipped(self) -> bool:
        return self is Outcome.SKIPPED_INCOMPLETE


@dataclass(frozen=True)
class RecordOutcome:
    """Result of processing a single record.

    Attributes:
        record_id: The record's identifier.
        outcome: Which of the six outcomes occurred.
        message: Error-log entry, or ``None`` for clean successes.
        abandoned: ``True`` if this failure pushed the record over
                   ``max_failures`` and it was permanently skipped.
    """

    record_id: str
    outcome: Outcome
    message: str | None = None
    abandoned: bool = False


@dataclass
class RunResult:
    """Aggregated counts for one run.

    ``processed == succeeded + failed + skipped`` always holds;
    ``low_confidence`` is a subset of ``succeeded`` and ``abandoned`` a
    subset of ``failed``.
    """

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    low_confidence: int = 0
    abandoned: int = 0
    elapsed: float = 0.0

    def add(self, outcome: RecordOutcome) -> None:
        """Count one record outcome."""
        self.processed += 1
        if outcome.outcome.succeeded:
            self.succeeded += 1
            if outcome.outcome is Outcome.LOW_CONFIDENCE:
                self.low_confidence += 1
        elif outcome.outcome.skipped:
            self.skipped += 1
        else:
            self.failed += 1
            if outcome.abandoned:
                self.abandoned += 1

    def merge(self, other: "RunResult") -> None:
        """Add another tally's counts into this one."""
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.skipped += other.skipped
        self.low_confidence += other.low_confidence
        self.abandoned += other.abandoned

    @property
    def is_consistent(self) -> bool:
        return self.processed == self.succeeded + self.failed + self.skipped


@dataclass
class BatchTally(RunResult):
    """Counts plus the error-log entries produced by one batch."""

    errors: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------


def chunk(records: Sequence[Record], size: int) -> list[list[Record]]:
    """Split *records* into consecutive lists of at most *size* items."""
    return [list(records[i:i + size]) for i in range(0, len(records), size)]


class BatchProcessor:
    """Geocode a list of pending records and write the outcomes back.

    Args:
        geocoder: Validating, rate-limited geocoder.
        gateway: Persistence gateway for write-back and failure tracking.
        reporter: Receives error lines and reports progress per window.
        config: Batch sizing and failure policy.
        write_retries: In-run retries for transient write-back errors.
        write_retry_delay: Fixed seconds between write-back attempts.

    Example::

        processor = BatchProcessor(geocoder, gateway, reporter, config)
        result = await processor.run(records)
    """

    def __init__(
        self,
        geocoder: Geocoder,
        gateway: PersistenceGateway,
        reporter: Reporter,
        config: RunConfig,
        *,
        write_retries: int = MAX_RETRIES,
        write_retry_delay: float = RETRY_DELAY,
    ) -> None:
        self.geocoder = geocoder
        self.gateway = gateway
        self.reporter = reporter
        self.config = config
        self.write_retries = write_retries
        self.write_retry_delay = write_retry_delay

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, records: Sequence[Record]) -> RunResult:
        """Process every record once and return the aggregated counts.

        Per-record errors never escape this method; they are counted and
        handed to the reporter.
        """
        start = time.perf_counter()
        result = RunResult()

        records = self._unique(records)
        if not records:
            logger.info("No locations need geocoding.")
            return result

        batch_size = self.config.batch_size
        max_concurrent = self.config.max_concurrent
        batches = chunk(records, batch_size)
        windows = [batches[i:i + max_concurrent] for i in range(0, len(batches), max_concurrent)]

        if self.config.unlimited:
            logger.info(
                "===== PROCESSING ALL RECORDS MODE =====\n"
                "Will process all %d pending records (could take several hours)",
                len(records),
            )
        logger.info(
            "Processing %d locations with batch size %d and %d concurrent batches",
            len(records), batch_size, max_concurrent,
        )

        for window_index, window in enumerate(windows):
            first = window_index * max_concurrent
            logger.info(
                "Processing batches %d to %d of %d...",
                first + 1, first + len(window), len(batches),
            )
            tallies = await asyncio.gather(
                *(
                    self.process_batch(batch, first + offset + 1, len(batches))
                    for offset, batch in enumerate(window)
                )
            )
            for tally in tallies:
                result.merge(tally)
                await self.reporter.record(tally.errors)

            await self.reporter.flush_if_needed()
            await self.reporter.report_progress(window_index, len(windows))

        result.elapsed = time.perf_counter() - start
        return result

    @staticmethod
    def _unique(records: Sequence[Record]) -> list[Record]:
        seen: set[str] = set()
        unique = []
        for record in records:
            if record.id in seen:
                logger.warning("Duplicate record %s ignored", record.id)
                continue
            seen.add(record.id)
            unique.append(record)
        return unique

    async def process_batch(self, batch: Sequence[Record], batch_num: int, total_batches: int) -> BatchTally:
        """Process all records of one batch concurrently."""
        tally = BatchTally()
        outcomes = await asyncio.gather(*(self.process_record(record) for record in batch))
        for outcome in outcomes:
            tally.add(outcome)
            if outcome.message:
                tally.errors.append(outcome.message)

        logger.info(
            "Completed batch %d/%d. Success: %d, Failed: %d, Skipped: %d",
            batch_num, total_batches, tally.succeeded, tally.failed, tally.skipped,
        )
        return tally

    # ------------------------------------------------------------------
    # Single record
    # ------------------------------------------------------------------

    async def process_record(self, record: Record) -> RecordOutcome:
        """Geocode one record and persist the outcome.

        Never raises (other than cancellation): unexpected errors become an
        :attr:`Outcome.EXCEPTION` outcome.
        """
        try:
            try:
                result = await self.geocoder.geocode(record.address, record.city, record.state)
            except AddressError as exc:
                return await self._skip_incomplete(record, exc)
            except GeocodingError as exc:
                return await self._register_failure(record, exc)
            return await self._store(record, result)
        except Exception as exc:  # noqa: BLE001
            message = (
                f"[{utc_timestamp()}] EXCEPTION: Error processing location {record.label}\n"
                f"  Error: {exc!r}\n"
                f"  Address: {record.full_address}\n"
                f"  {traceback.format_exc().rstrip()}"
            )
            logger.error("Unexpected error processing location %s: %r", record.label, exc)
            return RecordOutcome(record.id, Outcome.EXCEPTION, message)

    async def _skip_incomplete(self, record: Record, exc: AddressError) -> RecordOutcome:
        missing = exc.missing
        message = (
            f"[{utc_timestamp()}] SKIPPED: Location {record.id} - {record.name or 'Unknown'} "
            f"has incomplete address data.\n"
            f"  Address: {record.address or 'MISSING'}\n"
            f"  City: {'MISSING' if 'City' in missing else record.city}\n"
            f"  State: {'MISSING' if 'State' in missing else record.state}"
        )
        logger.warning("Skipping %s: incomplete address (missing %s)", record.label, ", ".join(missing))

        try:
            await self.gateway.mark_skipped(record.id, SkipReason.incomplete_address(record, missing))
        except PersistenceError as persist_exc:
            # Still a skip; the record is simply re-examined next run.
            message += f"\n  Could not mark record to skip: {persist_exc.message}"
        return RecordOutcome(record.id, Outcome.SKIPPED_INCOMPLETE, message)

    async def _register_failure(self, record: Record, exc: GeocodingError) -> RecordOutcome:
        message = (
            f"[{utc_timestamp()}] GEOCODING ERROR ({exc.kind}): {exc.message} "
            f"for {record.label}\n"
            f"  Address: {record.full_address}"
        )
        logger.warning("Geocoding failed for %s: %s", record.label, exc.message)

        failures = await self.gateway.increment_failure_count(record.id, exc.kind)
        if failures < self.config.max_failures:
            return RecordOutcome(record.id, Outcome.GEOCODE_FAILED, message)

        await self.gateway.mark_skipped(
            record.id, SkipReason.consecutive_failures(record, failures, exc.kind)
        )
        logger.info(
            "Marked location %s to be skipped after %d failed geocoding attempts",
            record.id, failures,
        )
        return RecordOutcome(record.id, Outcome.GEOCODE_FAILED, message, abandoned=True)

    async def _store(self, record: Record, result: GeocodeResult) -> RecordOutcome:
        try:
            await retry_transient(
                lambda: self.gateway.write_result(record.id, result),
                description=f"Database update for location {record.id}",
                max_retries=self.write_retries,
                delay=self.write_retry_delay,
            )
        except PersistenceError as exc:
            message = (
                f"[{utc_timestamp()}] DATABASE ERROR: Failed to update location "
                f"{record.label}: {exc.message}"
            )
            logger.error("Failed to store result for %s: %s", record.label, exc.message)
            return RecordOutcome(record.id, Outcome.PERSISTENCE_FAILED, message)

        if result.low_confidence:
            logger.warning(
                "LOW CONFIDENCE: Score %.2f for %s\n  Address: %s",
                result.relevance, record.label, record.full_address,
            )
            return RecordOutcome(record.id, Outcome.LOW_CONFIDENCE)
        logger.debug(
            "✓ %s → (%.5f, %.5f)", record.label, result.latitude, result.longitude
        )
        return RecordOutcome(record.id, Outcome.SUCCESS)
