"""
Thermal Engine - Logging System
===============================
Process-wide logging with console/file output and solver performance tracking.

Records emitted while a solve is active carry its run tag, and records from
pool workers (UQ samples, refinement levels) carry the worker thread name.

Author: Thermal Engine Developers
Version: 1.0.0
"""

import logging
import os
import sys
import time
import traceback
from datetime import datetime
from typing import Optional, Dict, Any, Callable
from functools import wraps
import threading
from contextlib import contextmanager


class ThermalEngineFormatter(logging.Formatter):
    """Single-line records: time, level, run/thread tags, origin, message."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = False):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]
        level = f"{record.levelname:8s}"
        if self.use_colors and record.levelname in self.COLORS:
            level = f"{self.COLORS[record.levelname]}{level}{self.RESET}"

        tags = ""
        run_id = getattr(record, 'run_id', None)
        if run_id:
            tags += f"<{run_id}>"
        if record.threadName and record.threadName != 'MainThread':
            tags += f"[{record.threadName}]"

        text = f"{stamp} {level} {tags + ' ' if tags else ''}{record.module}:{record.lineno} {record.getMessage()}"
        if record.exc_info:
            text += '\n' + self.formatException(record.exc_info)
        return text


class PerformanceTracker:
    """Running count/total/min/max of wall-clock time per solver operation."""

    def __init__(self):
        self._stats: Dict[str, Dict[str, float]] = {}
        self._lock = threading.Lock()

    def record_timing(self, operation: str, duration_s: float):
        with self._lock:
            s = self._stats.get(operation)
            if s is None:
                self._stats[operation] = {'count': 1, 'total': duration_s,
                                          'min': duration_s, 'max': duration_s}
                return
            s['count'] += 1
            s['total'] += duration_s
            s['min'] = min(s['min'], duration_s)
            s['max'] = max(s['max'], duration_s)

    def get_stats(self, operation: str) -> Dict[str, float]:
        with self._lock:
            s = dict(self._stats.get(operation, {'count': 0, 'total': 0.0, 'min': 0.0, 'max': 0.0}))
        s['mean'] = s['total'] / s['count'] if s['count'] else 0.0
        return s

    def get_all_stats(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            names = sorted(self._stats)
        return {name: self.get_stats(name) for name in names}

    def clear(self):
        with self._lock:
            self._stats.clear()


class _RunTagFilter(logging.Filter):
    """Stamps records with the active run id of the owning logger."""

    def __init__(self, owner: 'ThermalEngineLogger'):
        super().__init__()
        self.owner = owner

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = self.owner.run_id
        return True


class ThermalEngineLogger:
    """
    Logging front end shared by every solver component.

    One instance per process; use :func:`get_logger`. Console output goes to
    stderr, file output is opt-in through :meth:`configure`.
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self, console_level: int = logging.INFO):
        if self._initialized:
            return
        self._initialized = True

        self.logger = logging.getLogger('thermal_engine')
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
        self.logger.addFilter(_RunTagFilter(self))

        stream = sys.stderr
        self.console_handler = logging.StreamHandler(stream)
        self.console_handler.setLevel(console_level)
        is_tty = bool(getattr(stream, 'isatty', None) and stream.isatty())
        self.console_handler.setFormatter(ThermalEngineFormatter(use_colors=is_tty))
        self.logger.addHandler(self.console_handler)

        self.file_handler: Optional[logging.FileHandler] = None
        self.current_log_file: Optional[str] = None
        self.performance: Optional[PerformanceTracker] = PerformanceTracker()

        self.run_id: Optional[str] = None
        self.run_start_time: Optional[float] = None

    def configure(self, log_dir: Optional[str] = None,
                  console_level: Optional[int] = None,
                  file_level: int = logging.DEBUG,
                  enable_file_logging: bool = False,
                  enable_performance_tracking: bool = True):
        """Adjust levels and (re)attach the log file."""
        if console_level is not None:
            self.console_handler.setLevel(console_level)
        if self.file_handler is not None:
            self.logger.removeHandler(self.file_handler)
            self.file_handler.close()
            self.file_handler = None
            self.current_log_file = None
        if enable_file_logging:
            log_dir = log_dir or os.path.join(os.path.expanduser('~'), '.thermal_engine', 'logs')
            os.makedirs(log_dir, exist_ok=True)
            path = os.path.join(log_dir, f"thermal_engine_{datetime.now():%Y%m%d_%H%M%S}.log")
            self.file_handler = logging.FileHandler(path, encoding='utf-8')
            self.file_handler.setLevel(file_level)
            self.file_handler.setFormatter(ThermalEngineFormatter(use_colors=False))
            self.logger.addHandler(self.file_handler)
            self.current_log_file = path
            self.info(f"Log file created: {path}")
        if not enable_performance_tracking:
            self.performance = None
        elif self.performance is None:
            self.performance = PerformanceTracker()

    def debug(self, message: str, *args, **kwargs):
        self.logger.debug(message, *args, stacklevel=2, **kwargs)

    def info(self, message: str, *args, **kwargs):
        self.logger.info(message, *args, stacklevel=2, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        self.logger.warning(message, *args, stacklevel=2, **kwargs)

    def error(self, message: str, *args, **kwargs):
        self.logger.error(message, *args, stacklevel=2, **kwargs)

    def exception(self, message: str, *args, **kwargs):
        self.logger.exception(message, *args, stacklevel=2, **kwargs)

    # Solve lifecycle
    def start_run(self, run_id: str, params: Dict[str, Any]):
        self.run_id = run_id
        self.run_start_time = time.time()
        summary = ", ".join(f"{k}={v}" for k, v in params.items())
        self.info(f"Solve started ({summary})")

    def end_run(self, success: bool = True, message: str = ""):
        duration = time.time() - self.run_start_time if self.run_start_time else 0.0
        status = "finished" if success else "failed"
        self.info(f"Solve {status} after {duration:.2f}s{': ' + message if message else ''}")
        if self.performance:
            for op, s in self.performance.get_all_stats().items():
                self.debug(f"  {op}: {s['count']:.0f} calls, total={s['total']:.3f}s, "
                           f"max={s['max']:.3f}s")
        self.run_id = None
        self.run_start_time = None

    def log_progress(self, current: int, total: int, stage: str = ""):
        percent = (current / total * 100) if total > 0 else 0
        self.info(f"{stage or 'Progress'}: {current}/{total} ({percent:.0f}%)")

    def log_thermal_step(self, step: int, time_s: float,
                         min_temp: float, max_temp: float, avg_temp: float):
        self.debug(f"step {step} t={time_s:.3f}s: Tmin={min_temp:.3f}°C, "
                   f"Tmax={max_temp:.3f}°C, Tavg={avg_temp:.3f}°C")

    def log_convergence(self, iteration: int, residual: float, target: float):
        self.debug(f"Iteration {iteration}: max|dT|={residual:.3e}, target={target:.3e}")

    def log_mesh_stats(self, nodes: int, elements: int, min_size: float, max_size: float):
        self.info(f"Mesh: {nodes} nodes, {elements} elements, "
                  f"element size range [{min_size * 1e3:.4f}, {max_size * 1e3:.4f}] mm")

    def log_refinement_level(self, level: int, nodes: int, value: float, gci: Optional[float]):
        gci_text = f"{gci * 100:.3f}%" if gci is not None else "n/a"
        self.info(f"Refinement level {level}: {nodes} nodes, Tmax={value:.6f}°C, GCI={gci_text}")


def get_logger() -> ThermalEngineLogger:
    """Get the global logger instance."""
    return ThermalEngineLogger()


def initialize_logger(log_dir: Optional[str] = None,
                      console_level: int = logging.INFO,
                      enable_file_logging: bool = False) -> ThermalEngineLogger:
    """Configure the global logger; later calls replace earlier settings."""
    logger = get_logger()
    logger.configure(log_dir=log_dir, console_level=console_level,
                     enable_file_logging=enable_file_logging)
    return logger


def timed_function(operation_name: Optional[str] = None):
    """Decorator recording the wall-clock time of each call."""
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            logger = get_logger()
            op_name = operation_name or func.__name__
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration = time.perf_counter() - start
                if logger.performance:
                    logger.performance.record_timing(op_name, duration)
                logger.debug(f"{op_name} took {duration:.3f}s")
        return wrapper
    return decorator


@contextmanager
def log_section(section_name: str):
    """Log entry to and exit from a named phase of a solve."""
    logger = get_logger()
    logger.debug(f"--- {section_name} ---")
    start = time.perf_counter()
    try:
        yield
    except Exception as e:
        logger.warning(f"{section_name} aborted after {time.perf_counter() - start:.3f}s: "
                       f"{type(e).__name__}: {e}")
        raise
    logger.debug(f"--- {section_name} done in {time.perf_counter() - start:.3f}s ---")


def format_error_report(error: Exception, context: Optional[Dict[str, Any]] = None) -> str:
    """Multi-line description of an error, its ``details`` and extra context."""
    lines = [f"{type(error).__name__}: {error}"]
    for title, items in (("details", getattr(error, 'details', None)), ("context", context)):
        if items:
            lines.append(f"{title}:")
            for key, value in items.items():
                text = repr(value)
                if len(text) > 200:
                    text = text[:197] + "..."
                lines.append(f"  {key} = {text}")
    if error.__traceback__ is not None:
        lines.append("".join(traceback.format_tb(error.__traceback__)).rstrip())
    return "\n".join(lines)


__all__ = [
    'ThermalEngineLogger',
    'ThermalEngineFormatter',
    'PerformanceTracker',
    'get_logger',
    'initialize_logger',
    'timed_function',
    'log_section',
    'format_error_report',
]
