"""
Church Geocoder — Reporter
===========================
Progress snapshots and bounded-memory error logging for a geocoding run.

Error strings accumulate in memory only until :data:`ERROR_FLUSH_THRESHOLD`
entries are held; at that point they are appended to
``geocoding-errors-<timestamp>.log`` in the log directory and the in-memory
list is cleared.  Memory therefore stays flat no matter how many records
fail.

If the error log cannot be written the entries stay in memory, still
capped below the threshold, and the run carries on.

Progress reporting is advisory: a failed count query is logged and the run
carries on.

Classes:
    ProgressSnapshot    Geocoded/total counts at one point in time.
    Reporter            Error log, progress milestones and run summary.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from church_geocoder.exceptions import OutputWriteError, PersistenceError
from church_geocoder.gateway import PersistenceGateway

if TYPE_CHECKING:
    from church_geocoder.processor import RunResult

logger = logging.getLogger("church_geocoder.reporter")

ERROR_FLUSH_THRESHOLD = 50


def _file_stamp() -> str:
    return datetime.now().strftime("%Y-%m-%dT%H-%M-%S")


def _pct(part: int, whole: int) -> float:
    return (part / whole) * 100 if whole else 0.0


@dataclass(frozen=True)
class ProgressSnapshot:
    """Geocoded and total record counts at one point in time."""

    geocoded: int
    total: int

    @property
    def remaining(self) -> int:
        return max(self.total - self.geocoded, 0)

    @property
    def percentage(self) -> float:
        return _pct(self.geocoded, self.total)

    def __str__(self) -> str:
        return f"{self.geocoded}/{self.total} locations geocoded ({self.percentage:.1f}%)"


class Reporter:
    """Collects error strings and reports progress for one run.

    Args:
        log_dir: Directory for the error log and summary files.
        gateway: Source of the progress counts.
        threshold: In-memory error entries that trigger a flush to disk.
        progress_every: Every Nth window gets a detailed progress block.
        milestone_fraction: Once this fraction of windows has completed,
                            every window gets a detailed block.
    """

    def __init__(
        self,
        log_dir: Path,
        gateway: PersistenceGateway,
        *,
        threshold: int = ERROR_FLUSH_THRESHOLD,
        progress_every: int = 5,
        milestone_fraction: float = 0.2,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.gateway = gateway
        self.threshold = threshold
        self.progress_every = progress_every
        self.milestone_fraction = milestone_fraction

        self._stamp = _file_stamp()
        self._errors: list[str] = []
        self._write_lock = asyncio.Lock()
        self.error_log_path: Path | None = None
        self.flushed_count = 0
        self.dropped_count = 0

    # ------------------------------------------------------------------
    # Error log
    # ------------------------------------------------------------------

    @property
    def pending_errors(self) -> list[str]:
        """Copy of the error strings not yet written to disk."""
        return list(self._errors)

    async def record(self, messages: Iterable[str]) -> None:
        """Append *messages*, flushing whenever the threshold is reached.

        A failed write is logged and the entries are held for the next
        flush, so this never raises.
        """
        for message in messages:
            self._errors.append(message)
            if len(self._errors) >= self.threshold:
                await self._flush()

    async def flush_if_needed(self) -> bool:
        """Flush if the in-memory list has reached the threshold.

        Returns:
            ``True`` if a flush was attempted.
        """
        if len(self._errors) >= self.threshold:
            await self._flush()
            return True
        return False

    async def flush(self) -> None:
        """Write out whatever is still held in memory."""
        if self._errors:
            await self._flush()

    async def _flush(self) -> None:
        batch, self._errors = self._errors, []
        try:
            async with self._write_lock:
                await asyncio.to_thread(self._append, batch)
        except OutputWriteError as exc:
            self._restore(batch)
            logger.error("Could not write error log: %s", exc.message)
            return
        self.flushed_count += len(batch)
        logger.debug("Flushed %d error entries to %s", len(batch), self.error_log_path)

    def _restore(self, batch: list[str]) -> None:
        # Held entries stay below the flush threshold; the oldest go first.
        kept = (batch + self._errors)[-(self.threshold - 1):] if self.threshold > 1 else []
        dropped = len(batch) + len(self._errors) - len(kept)
        self._errors = kept
        if dropped:
            self.dropped_count += dropped
            logger.warning("Dropped %d unwritten error entries", dropped)

    def _append(self, batch: list[str]) -> None:
        if self.error_log_path is None:
            self.error_log_path = self.log_dir / f"geocoding-errors-{self._stamp}.log"
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            with open(self.error_log_path, "a", encoding="utf-8") as fh:
                fh.write("\n\n".join(batch) + "\n\n")
        except OSError as exc:
            raise OutputWriteError(str(self.error_log_path), str(exc)) from exc

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def progress_snapshot(self) -> ProgressSnapshot:
        """Query the current geocoded and total counts."""
        geocoded, total = await asyncio.gather(
            self.gateway.count_geocoded(), self.gateway.count_total()
        )
        return ProgressSnapshot(geocoded=geocoded, total=total)

    def is_milestone(self, window_index: int, total_windows: int) -> bool:
        """Whether window *window_index* (0-based) gets a detailed report."""
        if window_index % self.progress_every == 0:
            return True
        return window_index >= total_windows * self.milestone_fraction

    async def report_progress(self, window_index: int, total_windows: int) -> ProgressSnapshot | None:
        """Log progress after window *window_index* completes.

        Returns:
            The snapshot, or ``None`` if the counts could not be read.
        """
        try:
            snapshot = await self.progress_snapshot()
        except PersistenceError as exc:
            logger.warning("Could not read geocoding progress: %s", exc)
            return None

        if self.is_milestone(window_index, total_windows):
            logger.info(
                "\n===== GEOCODING PROGRESS SUMMARY =====\n"
                "Total Locations: %d\n"
                "Processed: %d (%.1f%%)\n"
                "Remaining: %d (%.1f%%)\n"
                "=======================================",
                snapshot.total,
                snapshot.geocoded, snapshot.percentage,
                snapshot.remaining, 100 - snapshot.percentage,
            )
        else:
            logger.info("Progress update: %s", snapshot)
        return snapshot

    # ------------------------------------------------------------------
    # Run summary
    # ------------------------------------------------------------------

    async def finalize(self, result: "RunResult") -> Path:
        """Flush remaining errors and write the run summary file.

        Database totals that cannot be read are reported as 0.

        Returns:
            Path of the summary file.
        """
        await self.flush()
        if self.flushed_count:
            logger.info("All error details saved to: %s", self.error_log_path)

        try:
            total, geocoded, skipped, low_confidence = await asyncio.gather(
                self.gateway.count_total(),
                self.gateway.count_geocoded(),
                self.gateway.count_skipped(),
                self.gateway.count_low_confidence(),
            )
        except PersistenceError as exc:
            logger.error("Error getting database statistics for summary: %s", exc)
            total = geocoded = skipped = low_confidence = 0
        pending = max(total - geocoded - skipped, 0)

        lines = [
            "GEOCODING SUMMARY",
            "================",
            f"Date: {datetime.now():%Y-%m-%d %H:%M:%S}",
            "",
            "--- Current Session ---",
            f"Total locations processed in this run: {result.processed}",
            f"Successfully geocoded in this run: {result.succeeded}",
            f"  of which low confidence: {result.low_confidence}",
            f"Failed to geocode in this run: {result.failed}",
            f"  of which newly skipped after repeated failures: {result.abandoned}",
            f"Skipped (incomplete address) in this run: {result.skipped}",
            f"Elapsed: {result.elapsed:.1f}s",
            "",
            "--- Overall Database Status ---",
            f"Total locations: {total}",
            f"Geocoded locations: {geocoded} ({_pct(geocoded, total):.1f}%)",
            f"Skipped locations: {skipped} ({_pct(skipped, total):.1f}%)",
            f"Pending locations: {pending} ({_pct(pending, total):.1f}%)",
            f"Low confidence results: {low_confidence} "
            f"({_pct(low_confidence, geocoded):.1f}% of geocoded)",
        ]
        summary_path = self.log_dir / f"geocoding-summary-{self._stamp}.txt"
        text = "\n".join(lines) + "\n"
        try:
            await asyncio.to_thread(self._write_text, summary_path, text)
        except OSError as exc:
            raise OutputWriteError(str(summary_path), str(exc)) from exc

        logger.info("Summary saved to: %s\n%s", summary_path, text)
        return summary_path

    def _write_text(self, path: Path, text: str) -> None:
        self.log_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
