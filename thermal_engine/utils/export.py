"""
Thermal Engine - Result Export
==============================
Tabular rows and CSV/JSON writers for temperature fields, transient series,
grid convergence tables and analysis summaries.

Author: Thermal Engine Developers
Version: 1.0.0
"""

import csv
import json
import math
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

import numpy as np

from .logger import get_logger

PathLike = Union[str, Path]

FIELD_COLUMNS = ['node_id', 'x_m', 'y_m', 'temperature_c', 'time_s']
GCI_COLUMNS = ['level', 'n_nodes', 'element_size_m', 'value_c', 'rise_c',
               'gci', 'order', 'safety_factor', 'compute_time_s']


def _jsonable(value: Any) -> Any:
    """Convert numpy scalars/arrays and non-finite floats for json.dump."""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, np.ndarray):
        return [_jsonable(v) for v in value.tolist()]
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and not math.isfinite(value):
        # JSON has no inf/nan
        return None if math.isnan(value) else ("inf" if value > 0 else "-inf")
    return value


def field_rows(snapshot_or_series, mesh) -> List[Dict[str, Any]]:
    """Rows (node_id, x_m, y_m, temperature_c, time_s) for a snapshot or series."""
    return snapshot_or_series.to_rows(mesh)


def write_csv(path: PathLike, rows: Iterable[Dict[str, Any]],
              columns: Optional[Sequence[str]] = None) -> Path:
    """
    Write dict rows as CSV.

    Args:
        path: Output file
        rows: Row dicts
        columns: Column order; defaults to the keys of the first row

    Returns:
        The path written
    """
    path = Path(path)
    rows = list(rows)
    if columns is None:
        columns = list(rows[0].keys()) if rows else []
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', newline='') as f:
        writer = csv.DictWriter(f, fieldnames=list(columns), extrasaction='ignore')
        writer.writeheader()
        for row in rows:
            writer.writerow({k: ("" if row.get(k) is None else row.get(k)) for k in columns})
    get_logger().debug(f"Wrote {len(rows)} rows to {path}")
    return path


def write_json(path: PathLike, data: Any) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w') as f:
        json.dump(_jsonable(data), f, indent=2)
    get_logger().debug(f"Wrote JSON to {path}")
    return path


def export_field_csv(path: PathLike, snapshot_or_series, mesh) -> Path:
    """CSV of a TemperatureField or every frame of a FieldSeries."""
    return write_csv(path, field_rows(snapshot_or_series, mesh), FIELD_COLUMNS)


def export_field_json(path: PathLike, snapshot_or_series, mesh) -> Path:
    return write_json(path, {'columns': FIELD_COLUMNS,
                             'rows': field_rows(snapshot_or_series, mesh)})


def export_gci_table(path: PathLike, refinement_result) -> Path:
    """GCI table of a RefinementResult; ``.json`` suffix selects JSON."""
    rows = refinement_result.gci_table()
    if Path(path).suffix.lower() == '.json':
        return write_json(path, {
            'converged': refinement_result.converged,
            'gci_target': refinement_result.gci_target,
            'reference_c': refinement_result.reference_c,
            'extrapolated_value_c': refinement_result.extrapolated_value,
            'levels': rows,
            'warnings': list(refinement_result.warnings),
        })
    return write_csv(path, rows, GCI_COLUMNS)


def export_summary(path: PathLike, results=None, report=None, refinement=None, uq=None) -> Path:
    """
    JSON summary of whichever analysis outputs are given.
    """
    data: Dict[str, Any] = {}
    if results is not None:
        final = results.final_field
        data['simulation'] = {
            'steady_state': results.steady_state,
            'steps_completed': results.steps_completed,
            'simulated_time_s': results.simulated_time_s,
            'compute_time_s': results.total_compute_time,
            'min_temp_c': final.min_temp if final is not None else None,
            'max_temp_c': final.max_temp if final is not None else None,
            'avg_temp_c': final.avg_temp if final is not None else None,
            'coupling_iterations': results.coupling_iterations,
            'cache_key': results.cache_key,
            'warnings': list(results.warnings),
        }
        if results.energy_balance is not None:
            eb = results.energy_balance
            data['simulation']['energy_balance'] = {
                'source_power_w': eb.source_power_w,
                'total_outflow_w': eb.total_outflow_w,
                'relative_imbalance': eb.relative_imbalance,
            }
    if report is not None:
        data['overheat'] = report.to_dict()
    if refinement is not None:
        data['refinement'] = {
            'converged': refinement.converged,
            'final_gci': refinement.final_gci,
            'levels': refinement.gci_table(),
        }
    if uq is not None:
        data['uncertainty'] = uq.to_dict()
    return write_json(path, data)


__all__ = [
    'FIELD_COLUMNS',
    'GCI_COLUMNS',
    'field_rows',
    'write_csv',
    'write_json',
    'export_field_csv',
    'export_field_json',
    'export_gci_table',
    'export_summary',
]
