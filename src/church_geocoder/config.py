"""
Church Geocoder — Run Configuration
====================================
Loads the run configuration from a YAML file and the service credentials
from the environment (optionally via a ``.env`` file).

The YAML layout groups options by concern::

    processing:
      max_records: 100      # 0 = no limit
      batch_size: 20
      max_concurrent: 5
    rate_limits:
      requests_per_minute: 300
    geocoding:
      max_failures: 3
      min_relevance: 0.3
    filters:
      states: []
      statuses: []

Classes:
    RunConfig       Validated options consumed by the batch processor.
    Credentials     Supabase and provider secrets read from the environment.

Functions:
    load_config     Read YAML, apply CLI overrides, validate.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import yaml
from dotenv import load_dotenv

from church_geocoder.exceptions import ConfigError, MissingCredentialsError
from church_geocoder.validators import Validators

logger = logging.getLogger("church_geocoder.config")

DEFAULT_CONFIG_PATH = Path("geocoding-config.yaml")

# Section each option lives under in the YAML file.
_SECTIONS: dict[str, tuple[str, ...]] = {
    "processing": ("max_records", "batch_size", "max_concurrent"),
    "rate_limits": ("requests_per_minute",),
    "geocoding": ("max_failures", "min_relevance"),
    "filters": ("states", "statuses"),
}


@dataclass(frozen=True)
class RunConfig:
    """Options for one geocoding run.

    Attributes:
        batch_size: Records per batch.
        max_concurrent: Batches executed concurrently in one window.
        requests_per_minute: Ceiling on outbound provider calls.
        max_failures: Failed attempts before a record is permanently skipped.
        min_relevance: Relevance below which a result is flagged
                       ``low_confidence`` (but still stored).
        states: Only fetch records in these states (empty = all).
        statuses: Only fetch records with these statuses (empty = all).
        max_records: Cap on records fetched per run; ``0`` means unlimited.
    """

    batch_size: int = 20
    max_concurrent: int = 5
    requests_per_minute: int = 300
    max_failures: int = 3
    min_relevance: float = 0.3
    states: tuple[str, ...] = field(default_factory=tuple)
    statuses: tuple[str, ...] = field(default_factory=tuple)
    max_records: int = 100

    def validate(self) -> "RunConfig":
        """Check every option and return ``self`` for chaining.

        Raises:
            ConfigError: On the first invalid option.
        """
        Validators.assert_positive("batch_size", self.batch_size)
        Validators.assert_positive("max_concurrent", self.max_concurrent)
        Validators.assert_positive("requests_per_minute", self.requests_per_minute)
        Validators.assert_positive("max_failures", self.max_failures)
        Validators.assert_in_range("min_relevance", self.min_relevance, 0.0, 1.0)
        if self.max_records < 0:
            raise ConfigError(f"'max_records' must be 0 or more, got {self.max_records!r}")
        return self

    @property
    def unlimited(self) -> bool:
        """``True`` when the run processes every pending record."""
        return self.max_records == 0

    def with_overrides(self, *, limit: int | None = None, process_all: bool = False) -> "RunConfig":
        """Apply the CLI record-count overrides.

        ``process_all`` wins over ``limit``.  A ``limit`` of 0 means unlimited;
        a negative one is left for :meth:`validate` to reject.
        """
        if process_all:
            return replace(self, max_records=0)
        if limit is not None:
            return replace(self, max_records=limit)
        return self

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RunConfig":
        """Build a config from the nested YAML structure.

        Unknown sections and keys are ignored; absent ones keep their
        defaults.

        Raises:
            ConfigError: If a section is not a mapping or a value has the
                wrong type.
        """
        values: dict[str, Any] = {}
        for section, keys in _SECTIONS.items():
            block = data.get(section) or {}
            if not isinstance(block, Mapping):
                raise ConfigError(f"Section '{section}' must be a mapping")
            for key in keys:
                if block.get(key) is not None:
                    values[key] = block[key]

        try:
            for key in ("batch_size", "max_concurrent", "requests_per_minute",
                        "max_failures", "max_records"):
                if key in values:
                    values[key] = int(values[key])
            if "min_relevance" in values:
                values["min_relevance"] = float(values["min_relevance"])
            for key in ("states", "statuses"):
                if key in values:
                    values[key] = tuple(str(v) for v in values[key])
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid configuration value: {exc}") from exc

        return cls(**values)


def load_config(
    path: Path | None = None,
    *,
    limit: int | None = None,
    process_all: bool = False,
) -> RunConfig:
    """Load, override and validate the run configuration.

    A missing file is not an error: the defaults are used and a warning
    is logged.

    Args:
        path: YAML file to read.  Defaults to ``geocoding-config.yaml`` in
              the working directory.
        limit: ``--limit`` CLI value; replaces ``max_records`` when given
               (0 = unlimited).
        process_all: ``--all`` CLI flag; forces ``max_records = 0``.

    Returns:
        A validated :class:`RunConfig`.

    Raises:
        ConfigError: If the file cannot be parsed or a value is invalid.
    """
    path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    if path.exists():
        try:
            with open(path, encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Could not parse '{path}': {exc}") from exc
        if not isinstance(data, Mapping):
            raise ConfigError(f"'{path}' must contain a mapping at the top level")
        config = RunConfig.from_mapping(data)
        logger.info("Loaded configuration from %s", path)
    else:
        logger.warning("Configuration file %s not found, using defaults.", path)
        config = RunConfig()

    return config.with_overrides(limit=limit, process_all=process_all).validate()


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credentials:
    """Secrets needed to reach the persistence store and the provider.

    Attributes:
        supabase_url: Project URL of the Supabase instance.
        supabase_key: Anon or service-role key.
        mapbox_token: Mapbox access token, or ``None`` when a keyless
                      backend is used.
    """

    supabase_url: str
    supabase_key: str
    mapbox_token: str | None = None

    # Canonical name → fallbacks, in lookup order.
    ENV_NAMES = {
        "SUPABASE_URL": ("SUPABASE_URL", "VITE_SUPABASE_URL"),
        "SUPABASE_ANON_KEY": ("SUPABASE_ANON_KEY", "VITE_SUPABASE_ANON_KEY"),
        "MAPBOX_ACCESS_TOKEN": ("MAPBOX_ACCESS_TOKEN", "VITE_MAPBOX_ACCESS_TOKEN"),
    }

    @classmethod
    def from_env(
        cls,
        *,
        require_mapbox: bool = True,
        env_file: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "Credentials":
        """Read credentials from the environment.

        Args:
            require_mapbox: Whether ``MAPBOX_ACCESS_TOKEN`` is mandatory.
            env_file: ``.env`` file to load first.  When ``None`` the usual
                      python-dotenv search is performed.  Ignored when
                      *environ* is given.
            environ: Mapping to read instead of :data:`os.environ`.

        Raises:
            MissingCredentialsError: Naming every missing variable.
        """
        if environ is None:
            load_dotenv(env_file)
            environ = os.environ

        def lookup(name: str) -> str | None:
            for candidate in cls.ENV_NAMES[name]:
                value = environ.get(candidate)
                if value and value.strip():
                    return value.strip()
            return None

        required = ["SUPABASE_URL", "SUPABASE_ANON_KEY"]
        if require_mapbox:
            required.append("MAPBOX_ACCESS_TOKEN")
        missing = [name for name in required if lookup(name) is None]
        if missing:
            raise MissingCredentialsError(missing)

        return cls(
            supabase_url=lookup("SUPABASE_URL") or "",
            supabase_key=lookup("SUPABASE_ANON_KEY") or "",
            mapbox_token=lookup("MAPBOX_ACCESS_TOKEN"),
        )
