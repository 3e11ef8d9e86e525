"""
Pipeline Logging for the Format rehosting service
=================================================

Coloured, phase-tagged logging with per-phase timing for the asset pipeline.
IMPORTANT: No emojis in console output (Windows encoding issues).
"""

import logging
import os
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional
from urllib.parse import urlsplit, urlunsplit

from colorama import Fore, Style, init

# Initialize colorama for Windows
init(autoreset=True)


class Phase:
    """Phase constants for the asset pipeline"""
    FETCH = "FETCH"
    DECIDE = "DECIDE"
    ENCODE = "ENCODE"
    STORE = "STORE"
    TRANSFORM = "HTML_TRANSFORM"


PHASE_COLORS = {
    Phase.FETCH: Fore.CYAN,
    Phase.DECIDE: Fore.BLUE,
    Phase.ENCODE: Fore.YELLOW,
    Phase.STORE: Fore.GREEN,
    Phase.TRANSFORM: Fore.MAGENTA,
}

# Text-based, no emojis
PHASE_ICONS = {
    Phase.FETCH: "[GET]",
    Phase.DECIDE: "[DEC]",
    Phase.ENCODE: "[ENC]",
    Phase.STORE: "[PUT]",
    Phase.TRANSFORM: "[HTM]",
}


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def redact_url(url: str) -> str:
    """Drop credentials, query and fragment so signed URLs never reach the logs"""
    try:
        parts = urlsplit(url)
        host = parts.hostname or ""
        port = parts.port
    except ValueError:
        return "<malformed url>"
    if not parts.scheme or not host:
        return url.split("?", 1)[0].split("#", 1)[0]
    netloc = f"[{host}]" if ":" in host else host
    if port is not None:
        netloc = f"{netloc}:{port}"
    return urlunsplit((parts.scheme, netloc, parts.path, "", ""))


class TimingTracker:
    """Track timing for phases"""

    def __init__(self):
        self._timings: Dict[str, float] = {}
        self._start_times: Dict[str, float] = {}

    def start(self, key: str):
        self._start_times[key] = time.monotonic()

    def end(self, key: str) -> float:
        """End timing and return elapsed seconds"""
        if key not in self._start_times:
            return 0.0
        elapsed = time.monotonic() - self._start_times.pop(key)
        self._timings[key] = self._timings.get(key, 0.0) + elapsed
        return elapsed

    def get(self, key: str) -> Optional[float]:
        return self._timings.get(key)

    def get_all(self) -> Dict[str, float]:
        return self._timings.copy()


class PhaseLogger:
    """
    Phase-aware logger for one pipeline run

    Usage:
        phase_logger = create_phase_logger("https://example.com/a.png")

        with phase_logger.phase(Phase.FETCH):
            phase_logger.info("Downloading...")
    """

    def __init__(
        self,
        label: str,
        verbose: bool = False,
        extra_verbose: bool = False,
        logger: Optional[logging.Logger] = None
    ):
        self.label = label
        self.verbose = verbose or extra_verbose
        self.extra_verbose = extra_verbose
        self.logger = logger or logging.getLogger(__name__)
        self.timing_tracker = TimingTracker()
        self._current_phase: Optional[str] = None
        self._phase_stack = []

    @contextmanager
    def phase(self, phase_name: str, sub_label: Optional[str] = None):
        """Context manager for phase tracking with automatic timing"""
        self._phase_stack.append(self._current_phase)
        self._current_phase = phase_name
        self.timing_tracker.start(phase_name)
        if self.verbose:
            sub_str = f" - {sub_label}" if sub_label else ""
            self._emit(logging.INFO, f"{phase_name} started{sub_str}")
        failed = False
        try:
            yield self
        except BaseException:
            failed = True
            raise
        finally:
            elapsed = self.timing_tracker.end(phase_name)
            status = "FAILED" if failed else "done"
            if self.verbose or failed:
                self._emit(logging.INFO, f"{phase_name} {status} ({elapsed:.3f}s)")
            self._current_phase = self._phase_stack.pop() if self._phase_stack else None

    def _emit(self, level: int, message: str):
        color = PHASE_COLORS.get(self._current_phase, Fore.WHITE)
        icon = PHASE_ICONS.get(self._current_phase, "[---]")
        self.logger.log(level, f"{color}{icon}{Style.RESET_ALL} {self.label}: {message}")

    def info(self, message: str):
        """Log info message with current phase context"""
        if self._current_phase:
            self._emit(logging.INFO, message)
        else:
            self.logger.info(f"{self.label}: {message}")

    def debug(self, message: str):
        """Log debug message (only if verbose)"""
        if self.verbose:
            self.logger.debug(f"{Fore.WHITE}{Style.DIM}{self.label}: {message}{Style.RESET_ALL}")

    def warning(self, message: str):
        self.logger.warning(f"{Fore.YELLOW}[WARN] {self.label}: {message}{Style.RESET_ALL}")

    def error(self, message: str):
        self.logger.error(f"{Fore.RED}{Style.BRIGHT}[ERROR] {self.label}: {message}{Style.RESET_ALL}")

    def log_details(self, title: str, details: Dict[str, Any]):
        """Log a block of key/value details (only if extra_verbose)"""
        if not self.extra_verbose:
            return
        color = PHASE_COLORS.get(self._current_phase, Fore.WHITE)
        self.logger.info(f"{color}[EXTRA_VERBOSE] {title}{Style.RESET_ALL}")
        for key, value in details.items():
            self.logger.info(f"  {key}: {value}")

    def log_timing_summary(self):
        """One line with the time spent in every phase"""
        timings = self.timing_tracker.get_all()
        if not timings:
            return
        parts = " ".join(f"{name}={elapsed:.3f}s" for name, elapsed in timings.items())
        total = sum(timings.values())
        self.logger.info(
            f"{Fore.WHITE}{Style.BRIGHT}{self.label}: {parts} total={total:.3f}s{Style.RESET_ALL}"
        )


def create_phase_logger(
    label: str,
    verbose: Optional[bool] = None,
    extra_verbose: Optional[bool] = None
) -> PhaseLogger:
    """Create a PhaseLogger; verbosity defaults come from VERBOSE / EXTRA_VERBOSE"""
    if verbose is None:
        verbose = _env_flag("VERBOSE")
    if extra_verbose is None:
        extra_verbose = _env_flag("EXTRA_VERBOSE")
    return PhaseLogger(
        label=label[:80],
        verbose=verbose,
        extra_verbose=extra_verbose,
    )
