"""
Church Geocoder — Geocoding Job
================================
Wires configuration, provider backend, persistence gateway, rate limiter,
batch processor and reporter into one runnable :class:`PipelineTool`.

Pipeline:
    1. ``validate_inputs`` — configuration, log directory, table schema.
    2. ``process`` — initial progress, fetch pending records, run the batch
       processor, final progress, summary file.

Usage::

    config = load_config(limit=50)
    job = GeocodingJob.from_env(config, backend="mapbox", log_dir=Path("logs"))
    job.run()
    print(job.result)
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from church_geocoder.base_tool import PipelineTool
from church_geocoder.config import Credentials, RunConfig
from church_geocoder.exceptions import ConfigError
from church_geocoder.gateway import PersistenceGateway, RecordFilter, SupabaseGateway
from church_geocoder.geocoder import Geocoder, GeocoderBackend, MapboxBackend, NominatimBackend
from church_geocoder.processor import BatchProcessor, RunResult
from church_geocoder.rate_limiter import RateLimiter
from church_geocoder.reporter import Reporter
from church_geocoder.validators import Validators

logger = logging.getLogger("church_geocoder.job")

BACKENDS = ("mapbox", "nominatim")


def build_backend(name: str, credentials: Credentials) -> GeocoderBackend:
    """Instantiate the provider backend called *name*."""
    name = name.lower()
    if name == "mapbox":
        if not credentials.mapbox_token:
            raise ConfigError("The mapbox backend needs MAPBOX_ACCESS_TOKEN")
        return MapboxBackend(access_token=credentials.mapbox_token)
    if name == "nominatim":
        return NominatimBackend()
    raise ConfigError(f"Unknown geocoding backend {name!r}; choose one of {', '.join(BACKENDS)}")


class GeocodingJob(PipelineTool):
    """Geocode every pending church property record once.

    Args:
        config: Validated run options.
        backend: Provider used for every lookup.
        gateway: Record store the job reads from and writes to.
        log_dir: Directory for the run log, error log and summary file.
        verbose: Enable DEBUG logging.
    """

    def __init__(
        self,
        config: RunConfig,
        backend: GeocoderBackend,
        gateway: PersistenceGateway,
        log_dir: Path = Path("logs"),
        *,
        verbose: bool = False,
    ) -> None:
        super().__init__(log_dir=log_dir, verbose=verbose)
        self.config = config
        self.backend = backend
        self.gateway = gateway
        self.summary_path: Path | None = None
        self._result: RunResult | None = None

    @classmethod
    def from_env(
        cls,
        config: RunConfig,
        *,
        backend: str = "mapbox",
        log_dir: Path = Path("logs"),
        env_file: Path | None = None,
        verbose: bool = False,
    ) -> "GeocodingJob":
        """Build a job against Supabase using credentials from the environment.

        Raises:
            MissingCredentialsError: If a required variable is unset.
            ConfigError: If *backend* is unknown.
        """
        credentials = Credentials.from_env(
            require_mapbox=backend.lower() == "mapbox", env_file=env_file
        )
        return cls(
            config,
            build_backend(backend, credentials),
            SupabaseGateway.from_credentials(credentials),
            log_dir=log_dir,
            verbose=verbose,
        )

    @property
    def result(self) -> RunResult:
        """Counts from the last run (all zeros before :meth:`run`)."""
        return self._result if self._result is not None else RunResult()

    # ------------------------------------------------------------------
    # PipelineTool implementation
    # ------------------------------------------------------------------

    def validate_inputs(self) -> None:
        self.config.validate()
        Validators.assert_output_dir_writable(self.log_dir)
        asyncio.run(self.gateway.validate_schema())
        logger.info(
            "Configuration: batch size %d, %d concurrent batches, %d requests/min, "
            "max failures %d, min relevance %.2f, max records %s",
            self.config.batch_size,
            self.config.max_concurrent,
            self.config.requests_per_minute,
            self.config.max_failures,
            self.config.min_relevance,
            "unlimited" if self.config.unlimited else self.config.max_records,
        )

    def process(self) -> None:
        try:
            self._result = asyncio.run(self._execute())
        finally:
            self.close()

    async def _execute(self) -> RunResult:
        reporter = Reporter(self.log_dir, self.gateway)
        geocoder = Geocoder(
            self.backend,
            RateLimiter(self.config.requests_per_minute),
            min_relevance=self.config.min_relevance,
        )
        processor = BatchProcessor(geocoder, self.gateway, reporter, self.config)

        logger.info("Using %s geocoder", self.backend.name)
        await reporter.report_progress(0, 1)

        records = await self.gateway.fetch_pending(RecordFilter.from_config(self.config))
        logger.info("Found %d locations that need geocoding", len(records))

        result = await processor.run(records)

        logger.info(
            "\n===== GEOCODING COMPLETE =====\n"
            "Total processed: %d\n"
            "Successfully geocoded: %d (low confidence: %d)\n"
            "Failed: %d (newly skipped: %d)\n"
            "Skipped (incomplete address): %d\n"
            "Elapsed: %.1fs",
            result.processed,
            result.succeeded, result.low_confidence,
            result.failed, result.abandoned,
            result.skipped,
            result.elapsed,
        )
        await reporter.report_progress(0, 1)
        self.summary_path = await reporter.finalize(result)
        return result
