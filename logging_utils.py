"""
Phase logging for the upload pipeline
=====================================

Colored, structured console logging with per-phase timing for a single
upload. Each upload gets its own PhaseLogger keyed by a request id.
IMPORTANT: No emojis in console output (Windows encoding issues).
"""

import logging
import time
from typing import Optional, Dict
from contextlib import contextmanager
from datetime import datetime
from colorama import Fore, Style, init

# Initialize colorama for Windows
init(autoreset=True)


class Phase:
    """Phase constants for the ingestion pipeline"""
    STREAMING = "STREAMING"
    SNIFFING = "SNIFFING"
    TYPE_CHECK = "TYPE_CHECK"
    NORMALIZING = "NORMALIZING"
    PERSISTED = "PERSISTED"


PHASE_COLORS = {
    Phase.STREAMING: Fore.CYAN,
    Phase.SNIFFING: Fore.BLUE,
    Phase.TYPE_CHECK: Fore.MAGENTA,
    Phase.NORMALIZING: Fore.YELLOW,
    Phase.PERSISTED: Fore.GREEN + Style.BRIGHT,
}

# Text-based icons, no emojis for Windows
PHASE_ICONS = {
    Phase.STREAMING: "[STR]",
    Phase.SNIFFING: "[SNF]",
    Phase.TYPE_CHECK: "[TYP]",
    Phase.NORMALIZING: "[NRM]",
    Phase.PERSISTED: "[OK ]",
}


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
        self._timings[key] = elapsed
        return elapsed

    def get(self, key: str) -> Optional[float]:
        return self._timings.get(key)

    def get_all(self) -> Dict[str, float]:
        """Get all recorded timings"""
        return self._timings.copy()


class PhaseLogger:
    """
    Logger with phase tracking for one upload

    Usage:
        phase_logger = PhaseLogger(request_id="3f2a...")

        with phase_logger.phase(Phase.NORMALIZING, sub_label="image/jpeg"):
            phase_logger.info("Re-encoding without metadata")
    """

    def __init__(
        self,
        request_id: str,
        verbose: bool = False,
        logger: Optional[logging.Logger] = None
    ):
        self.request_id = request_id
        self.verbose = verbose
        self.logger = logger or logging.getLogger(__name__)
        self.timing_tracker = TimingTracker()
        self._current_phase: Optional[str] = None
        self._phase_stack = []

    @contextmanager
    def phase(self, phase_name: str, sub_label: Optional[str] = None):
        """Context manager for phase tracking with automatic timing"""
        self._enter_phase(phase_name, sub_label)
        try:
            yield self
        finally:
            self._exit_phase(phase_name)

    def _enter_phase(self, phase_name: str, sub_label: Optional[str] = None):
        self._phase_stack.append(self._current_phase)
        self._current_phase = phase_name
        self.timing_tracker.start(f"phase_{phase_name}_{len(self._phase_stack)}")

        color = PHASE_COLORS.get(phase_name, Fore.WHITE)
        icon = PHASE_ICONS.get(phase_name, "[???]")
        timestamp = datetime.now().strftime("%H:%M:%S")
        sub_str = f" - {sub_label}" if sub_label else ""
        self.logger.info(
            f"{color}{icon} {phase_name}{sub_str} [{self.request_id}] [{timestamp}]{Style.RESET_ALL}"
        )

    def _exit_phase(self, phase_name: str):
        elapsed = self.timing_tracker.end(f"phase_{phase_name}_{len(self._phase_stack)}")

        color = PHASE_COLORS.get(phase_name, Fore.WHITE)
        icon = PHASE_ICONS.get(phase_name, "[???]")
        elapsed_str = f"{elapsed * 1000:.1f}ms" if elapsed > 0 else "N/A"
        self.logger.info(
            f"{color}{icon} {phase_name} done [{self.request_id}] (Elapsed: {elapsed_str}){Style.RESET_ALL}"
        )

        self._current_phase = self._phase_stack.pop() if self._phase_stack else None

    @property
    def current_phase(self) -> Optional[str]:
        return self._current_phase

    def info(self, message: str):
        """Log info message with current phase context"""
        if self._current_phase:
            color = PHASE_COLORS.get(self._current_phase, Fore.WHITE)
            icon = PHASE_ICONS.get(self._current_phase, "[???]")
            self.logger.info(f"{color}{icon}{Style.RESET_ALL} {message}")
        else:
            self.logger.info(message)

    def debug(self, message: str):
        """Log debug message (only if verbose)"""
        if self.verbose:
            self.logger.debug(f"{Fore.WHITE}{Style.DIM}{message}{Style.RESET_ALL}")

    def warning(self, message: str):
        self.logger.warning(f"{Fore.YELLOW}[WARN] {message}{Style.RESET_ALL}")

    def error(self, message: str):
        self.logger.error(f"{Fore.RED}{Style.BRIGHT}[ERROR] {message}{Style.RESET_ALL}")

    def log_outcome(self, event: str, **fields):
        """
        Log a dotted event code with key=value fields.

        Example:
            phase_logger.log_outcome("upload.rejected", code="oversize", bytes=1048577)
        """
        if event.endswith((".rejected", ".failed")):
            color = Fore.RED + Style.BRIGHT
        elif event.endswith((".stored", ".deduplicated")):
            color = Fore.GREEN + Style.BRIGHT
        else:
            color = Fore.WHITE
        details = " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)
        self.logger.info(f"{color}{event}{Style.RESET_ALL} request_id={self.request_id} {details}".rstrip())

    def timing_summary(self) -> Dict[str, float]:
        """Elapsed milliseconds per phase name"""
        summary: Dict[str, float] = {}
        for key, elapsed in self.timing_tracker.get_all().items():
            phase_name = key.replace("phase_", "", 1).rsplit("_", 1)[0]
            summary[phase_name] = round(summary.get(phase_name, 0.0) + elapsed * 1000, 2)
        return summary


def create_phase_logger(request_id: str, verbose: bool = False) -> PhaseLogger:
    """Create a new PhaseLogger instance"""
    return PhaseLogger(request_id=request_id, verbose=verbose, logger=logging.getLogger("media_vault.upload"))
