"""
Church Geocoder
================
Batch geocoding of church property records held in Supabase: pending
records are geocoded through a rate-limited provider backend and the
coordinates (or a skip reason) are written back.

Public API::

    from church_geocoder import GeocodingJob, load_config

    job = GeocodingJob.from_env(load_config(), backend="mapbox")
    job.run()
"""

from church_geocoder.config import Credentials, RunConfig, load_config
from church_geocoder.gateway import (
    PersistenceGateway,
    Record,
    RecordFilter,
    SkipReason,
    SupabaseGateway,
)
from church_geocoder.geocoder import (
    GeocodeResult,
    Geocoder,
    GeocoderBackend,
    MapboxBackend,
    NominatimBackend,
)
from church_geocoder.job import GeocodingJob
from church_geocoder.processor import BatchProcessor, RunResult
from church_geocoder.rate_limiter import RateLimiter
from church_geocoder.reporter import Reporter

__all__ = [
    "BatchProcessor",
    "Credentials",
    "GeocodeResult",
    "Geocoder",
    "GeocoderBackend",
    "GeocodingJob",
    "MapboxBackend",
    "NominatimBackend",
    "PersistenceGateway",
    "RateLimiter",
    "Record",
    "RecordFilter",
    "Reporter",
    "RunConfig",
    "RunResult",
    "SkipReason",
    "SupabaseGateway",
    "load_config",
]
__version__ = "1.0.0"
