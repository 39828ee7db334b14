"""
Thermal Engine - Utilities Module
=================================
Logging, result export and report generation.
"""

from .logger import (
    ThermalEngineLogger,
    ThermalEngineFormatter,
    PerformanceTracker,
    get_logger,
    initialize_logger,
    timed_function,
    log_section,
    format_error_report,
)


def __getattr__(name):
    """Lazy attribute access for the report classes (reportlab is heavy)."""
    if name in ('ReportGenerator', 'ReportSettings', 'generate_report'):
        from . import report_generator
        return getattr(report_generator, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    # Logger
    'ThermalEngineLogger',
    'ThermalEngineFormatter',
    'PerformanceTracker',
    'get_logger',
    'initialize_logger',
    'timed_function',
    'log_section',
    'format_error_report',
    # Report (lazy loaded)
    'ReportGenerator',
    'ReportSettings',
    'generate_report',
]
