"""
Church Geocoder — Pipeline Tool Base Class
===========================================
Abstract base class for runnable pipeline jobs.

Design Pattern:
    Template Method — the public ``run()`` method defines a fixed
    pipeline (validate → process → report) that subclasses fill in
    by implementing the abstract methods ``validate_inputs`` and
    ``process``.

Usage:
    Do NOT instantiate this class directly.  Subclass it and implement
    the two abstract methods::

        from church_geocoder.base_tool import PipelineTool

        class MyJob(PipelineTool):
            def validate_inputs(self) -> None:
                ...
            def process(self) -> None:
                ...
"""

from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from church_geocoder.exceptions import OutputWriteError

# ---------------------------------------------------------------------------
# Package logger. Each module gets its own child logger via
#   logging.getLogger("church_geocoder.<module>").
# ---------------------------------------------------------------------------
logger = logging.getLogger("church_geocoder")

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s — %(message)s"


class PipelineTool(ABC):
    """Abstract base class for pipeline jobs.

    Every concrete job inherits from this class and implements
    :meth:`validate_inputs` and :meth:`process`.  Calling :meth:`run`
    executes the full pipeline in the correct order.

    Attributes:
        log_dir: Directory for the run log, error log and summary files,
            or ``None`` to log to the console only.
        verbose: When ``True`` the job logs DEBUG-level messages in
            addition to INFO/WARNING/ERROR.
        log_file: Path of this run's log file, if file logging is enabled.
    """

    def __init__(
        self,
        log_dir: Path | None = None,
        *,
        verbose: bool = False,
    ) -> None:
        self.log_dir: Path | None = Path(log_dir) if log_dir is not None else None
        self.verbose: bool = verbose
        self.log_file: Path | None = None

        self._configure_logging()

    # ------------------------------------------------------------------
    # Abstract interface: subclasses MUST implement these
    # ------------------------------------------------------------------

    @abstractmethod
    def validate_inputs(self) -> None:
        """Validate all preconditions before processing begins.

        Raises:
            InputValidationError: If configuration or credentials are bad.
            PersistenceError: If a required dependency is unreachable or
                misconfigured.
        """

    @abstractmethod
    def process(self) -> None:
        """Execute the job's core logic.

        Called by :meth:`run` after :meth:`validate_inputs` has
        succeeded.  Any exception raised here propagates up through
        :meth:`run`.
        """

    # ------------------------------------------------------------------
    # Template method: the public API callers use
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Execute the full job pipeline.

        Runs the steps in order:

        1. :meth:`validate_inputs` — verify all preconditions.
        2. :meth:`process` — do the work.
        3. :meth:`_report_success` — log the elapsed time.

        Raises:
            Any exception raised by ``validate_inputs`` or ``process``
            propagates unchanged so callers can handle it appropriately.
        """
        logger.info("Starting %s", self.__class__.__name__)
        start = time.perf_counter()

        self.validate_inputs()
        self.process()

        elapsed = time.perf_counter() - start
        self._report_success(elapsed)

    # ------------------------------------------------------------------
    # Protected helpers
    # ------------------------------------------------------------------

    def _report_success(self, elapsed: float) -> None:
        logger.info("%s completed in %.2fs", self.__class__.__name__, elapsed)

    def _configure_logging(self) -> None:
        """Set up console (and optional file) logging for this job.

        Attaches a :class:`logging.StreamHandler` to the ``church_geocoder``
        logger if none is present and, when ``log_dir`` is set, a
        :class:`logging.FileHandler` writing ``geocoding-<timestamp>.log``.
        Uses DEBUG level when ``self.verbose`` is ``True``, otherwise INFO.
        """
        formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%H:%M:%S")

        if not any(type(h) is logging.StreamHandler for h in logger.handlers):
            handler = logging.StreamHandler()
            handler.setFormatter(formatter)
            logger.addHandler(handler)

        if self.log_dir is not None:
            stamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
            self.log_file = self.log_dir / f"geocoding-{stamp}.log"
            try:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(self.log_file, encoding="utf-8")
            except OSError as exc:
                raise OutputWriteError(str(self.log_file), str(exc)) from exc
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)

        logger.setLevel(logging.DEBUG if self.verbose else logging.INFO)

    def close(self) -> None:
        """Detach and close this job's file handler, if any."""
        if self.log_file is None:
            return
        for handler in list(logger.handlers):
            if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(self.log_file):
                logger.removeHandler(handler)
                handler.close()

    # ------------------------------------------------------------------
    # Dunder helpers
    # ------------------------------------------------------------------

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(log_dir={self.log_dir!r})"
