"""
Church Geocoder — Input Validators
===================================
Static precondition checks used by the pipeline before any work begins.

The ``assert_*`` methods raise an appropriate exception from
:mod:`church_geocoder.exceptions` rather than returning booleans, which keeps
``validate_inputs`` implementations short::

    class MyJob(PipelineTool):
        def validate_inputs(self) -> None:
            Validators.assert_positive("batch_size", self.config.batch_size)
            Validators.assert_output_dir_writable(self.log_dir)
"""

from __future__ import annotations

import os
from pathlib import Path

from church_geocoder.exceptions import (
    AddressError,
    ConfigError,
    OutputWriteError,
)


def _present(value: str | None) -> bool:
    return bool(value and value.strip())


class Validators:
    """Collection of static precondition checks.

    All methods are ``@staticmethod`` — this class is never instantiated.
    It exists purely as a logical namespace.
    """

    # ------------------------------------------------------------------
    # Address checks
    # ------------------------------------------------------------------

    @staticmethod
    def missing_address_components(
        address: str | None, city: str | None, state: str | None
    ) -> list[str]:
        """Return the components that make an address ungeocodable.

        The street address is required plus at least one of city or state.
        When that holds the result is empty even if one of city/state is
        blank.

        Args:
            address: Street address line.
            city: City name.
            state: State name or abbreviation.

        Returns:
            Missing component names (``"Address"``, ``"City"``, ``"State"``),
            or ``[]`` when the address is usable.

        Example::

            Validators.missing_address_components("1 Church St", "", "TN")  # []
            Validators.missing_address_components("", "", "TN")  # ["Address", "City"]
        """
        has_address = _present(address)
        has_city = _present(city)
        has_state = _present(state)

        if has_address and (has_city or has_state):
            return []

        missing = []
        if not has_address:
            missing.append("Address")
        if not has_city:
            missing.append("City")
        if not has_state:
            missing.append("State")
        return missing

    @staticmethod
    def assert_address_complete(
        address: str | None, city: str | None, state: str | None
    ) -> None:
        """Assert that an address has enough components to geocode.

        Raises:
            AddressError: Listing every missing component.
        """
        missing = Validators.missing_address_components(address, city, state)
        if missing:
            raise AddressError(missing)

    # ------------------------------------------------------------------
    # File-system checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_output_dir_writable(directory: Path) -> None:
        """Assert that *directory* exists (creating it if needed) and is writable.

        Args:
            directory: Directory that log and summary files are written to.

        Raises:
            OutputWriteError: If the directory cannot be created or is not
                writable.
        """
        directory = Path(directory)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputWriteError(str(directory), str(exc)) from exc
        if not os.access(directory, os.W_OK):
            raise OutputWriteError(str(directory), "Directory is not writable")

    # ------------------------------------------------------------------
    # Numeric checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_positive(name: str, value: int | float) -> None:
        """Assert that the config value *name* is strictly positive.

        Raises:
            ConfigError: If *value* is zero or negative.
        """
        if value <= 0:
            raise ConfigError(f"'{name}' must be greater than 0, got {value!r}")

    @staticmethod
    def assert_in_range(
        name: str, value: float, low: float, high: float
    ) -> None:
        """Assert that the config value *name* lies within ``[low, high]``.

        Raises:
            ConfigError: If *value* is outside the closed interval.
        """
        if not low <= value <= high:
            raise ConfigError(
                f"'{name}' must be between {low} and {high}, got {value!r}"
            )
