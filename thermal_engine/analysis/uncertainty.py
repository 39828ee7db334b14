"""
Thermal Engine - Uncertainty Quantification
===========================================
Monte Carlo propagation of material, source and boundary uncertainty.

Sampling follows Saltelli's scheme: two independent N×d matrices A and B
plus d hybrids A_B^(i) (A with column i taken from B), N·(d + 2) model
runs in total. Every sample row draws from its own random stream spawned
from one seed, so results do not depend on worker count or scheduling.

Outputs:
- mean, standard deviation, confidence interval of the mean, percentiles
- first-order Sobol indices (Saltelli 2010 estimator)
- total-order Sobol indices (Jansen estimator)

Example:
    >>> engine = UncertaintyEngine(context, [
    ...     ParameterDistribution('k_fr4', 0.3, 'normal', std_dev=0.03,
    ...                           target='material:FR4:thermal_conductivity'),
    ... ])
    >>> result = engine.run()
    >>> print(result.percentiles['P95'])

Author: Thermal Engine Developers
Version: 1.0.0
"""

import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import stats

from ..core.config import UncertaintyConfig
from ..core.constants import PROPERTY_NAMES
from ..core.context import (CancellationToken, ConvectiveBC, RadiativeBC,
                            SimulationContext)
from ..core.errors import ThermalEngineError
from ..solvers.thermal_solver import ThermalResults, ThermalSolver
from ..utils.logger import get_logger, log_section


class DistributionType(Enum):
    """Supported probability distribution types."""
    NORMAL = "normal"
    UNIFORM = "uniform"
    TRIANGULAR = "triangular"
    LOGNORMAL = "lognormal"


@dataclass
class ParameterDistribution:
    """
    Uncertain input with its probability distribution and the part of the
    simulation context it perturbs.

    Attributes:
        name: Parameter identifier
        nominal: Nominal value (mean for normal/lognormal)
        distribution: 'normal', 'uniform', 'triangular' or 'lognormal'
        std_dev: Standard deviation (normal, lognormal)
        min_val: Lower bound (uniform, triangular)
        max_val: Upper bound (uniform, triangular)
        mode: Peak of a triangular distribution (defaults to nominal)
        target: What the value replaces in the context:
            ``material:<TAG>:<property>``, ``source_scale`` (multiplies every
            heat source), ``convection_h``, ``convection_ambient_c`` or
            ``radiation_surroundings_c``. Empty for model-only parameters.
    """
    name: str
    nominal: float
    distribution: str
    std_dev: Optional[float] = None
    min_val: Optional[float] = None
    max_val: Optional[float] = None
    mode: Optional[float] = None
    target: str = ""

    def __post_init__(self):
        """Validate distribution parameters."""
        try:
            dist_type = DistributionType(self.distribution.lower())
        except ValueError:
            raise ValueError(f"Unsupported distribution type: {self.distribution}. "
                             f"Supported: {[d.value for d in DistributionType]}") from None

        if dist_type in (DistributionType.NORMAL, DistributionType.LOGNORMAL):
            if self.std_dev is None or self.std_dev <= 0:
                raise ValueError(f"Parameter '{self.name}': {dist_type.value} distribution "
                                 f"requires a positive std_dev")
            if dist_type is DistributionType.LOGNORMAL and self.nominal <= 0:
                raise ValueError(f"Parameter '{self.name}': lognormal mean must be positive")
        else:
            if self.min_val is None or self.max_val is None:
                raise ValueError(f"Parameter '{self.name}': {dist_type.value} distribution "
                                 f"requires min_val and max_val")
            if self.min_val >= self.max_val:
                raise ValueError(f"Parameter '{self.name}': min_val must be less than max_val")
            if dist_type is DistributionType.TRIANGULAR:
                if self.mode is None:
                    self.mode = self.nominal
                if not (self.min_val <= self.mode <= self.max_val):
                    raise ValueError(f"Parameter '{self.name}': mode must be between min_val and max_val")

    @classmethod
    def for_material(cls, material, prop: str, tag: str) -> 'ParameterDistribution':
        """Normal distribution from a material's declared standard deviation."""
        if prop not in PROPERTY_NAMES:
            raise ValueError(f"Unknown material property: {prop}")
        std = material.uncertainty.get(prop)
        if not std:
            raise ValueError(f"Material '{tag}' declares no uncertainty for {prop}")
        return cls(f"{tag}.{prop}", getattr(material, prop), 'normal', std_dev=std,
                   target=f"material:{tag}:{prop}")

    def get_scipy_distribution(self):
        """Frozen scipy distribution for sampling."""
        dist_type = self.distribution.lower()

        if dist_type == 'normal':
            return stats.norm(loc=self.nominal, scale=self.std_dev)
        elif dist_type == 'uniform':
            return stats.uniform(loc=self.min_val, scale=self.max_val - self.min_val)
        elif dist_type == 'triangular':
            # scipy.stats.triang uses c = (mode - min) / (max - min)
            scale = self.max_val - self.min_val
            return stats.triang(c=(self.mode - self.min_val) / scale, loc=self.min_val, scale=scale)
        # lognormal parameterized by the mean and std of the variable itself
        sigma2 = np.log1p((self.std_dev / self.nominal) ** 2)
        return stats.lognorm(s=np.sqrt(sigma2), scale=self.nominal * np.exp(-0.5 * sigma2))

    def from_unit(self, u: np.ndarray) -> np.ndarray:
        """Transform uniform [0, 1) samples to this distribution."""
        return self.get_scipy_distribution().ppf(u)

    def describe(self) -> str:
        """Get human-readable description of the distribution."""
        dist_type = self.distribution.lower()
        if dist_type == 'normal':
            return f"Normal(mean={self.nominal}, std={self.std_dev})"
        elif dist_type == 'lognormal':
            return f"LogNormal(mean={self.nominal}, std={self.std_dev})"
        elif dist_type == 'uniform':
            return f"Uniform(min={self.min_val}, max={self.max_val})"
        return f"Triangular(min={self.min_val}, mode={self.mode}, max={self.max_val})"


def apply_parameters(context: SimulationContext, values: Dict[str, float],
                     parameters: Sequence[ParameterDistribution]) -> SimulationContext:
    """New context with every targeted parameter replaced by its sampled value."""
    materials = dict(context.materials)
    sources = list(context.heat_sources)
    bcs = list(context.boundary_conditions)

    for param in parameters:
        if not param.target:
            continue
        value = float(values[param.name])
        kind, _, rest = param.target.partition(':')
        if kind == 'material':
            tag, _, prop = rest.partition(':')
            if tag not in materials or prop not in PROPERTY_NAMES:
                raise ValueError(f"Parameter '{param.name}': bad target '{param.target}'")
            materials[tag] = materials[tag].with_overrides(**{prop: value})
        elif kind == 'source_scale':
            sources = [replace(s, power_density_w_m3=s.power_density_w_m3 * value) for s in sources]
        elif kind == 'convection_h':
            bcs = [replace(bc, h=value) if isinstance(bc, ConvectiveBC) else bc for bc in bcs]
        elif kind == 'convection_ambient_c':
            bcs = [replace(bc, ambient_c=value) if isinstance(bc, ConvectiveBC) else bc for bc in bcs]
        elif kind == 'radiation_surroundings_c':
            bcs = [replace(bc, surroundings_c=value) if isinstance(bc, RadiativeBC) else bc for bc in bcs]
        else:
            raise ValueError(f"Parameter '{param.name}': unknown target '{param.target}'")

    return context.with_changes(materials=materials, heat_sources=tuple(sources),
                                boundary_conditions=tuple(bcs))


def saltelli_unit_samples(n: int, d: int, seed: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    A and B matrices in the unit hypercube, row j drawn from the j-th
    spawned stream.
    """
    streams = np.random.SeedSequence(seed).spawn(n)
    U = np.stack([np.random.default_rng(s).random(2 * d) for s in streams])
    return U[:, :d], U[:, d:]


def sobol_indices(f_A: np.ndarray, f_B: np.ndarray, f_AB: np.ndarray) -> Tuple[np.ndarray, np.ndarray, float]:
    """
    First-order (Saltelli 2010) and total-order (Jansen) indices.

    Args:
        f_A, f_B: Model outputs on A and B, shape (N,)
        f_AB: Outputs on the hybrids, shape (d, N)

    Returns:
        (S1, ST, variance)
    """
    variance = float(np.var(np.concatenate([f_A, f_B])))
    if variance <= 0.0:
        d = f_AB.shape[0]
        return np.zeros(d), np.zeros(d), 0.0
    first = np.mean(f_B[None, :] * (f_AB - f_A[None, :]), axis=1) / variance
    total = 0.5 * np.mean((f_A[None, :] - f_AB) ** 2, axis=1) / variance
    return first, total, variance


@dataclass
class UQResult:
    """
    Output distribution of one UQ study.

    Attributes:
        n_samples: Successful evaluations used for statistics
        n_failed: Evaluations that raised and were dropped
        n_cancelled: Evaluations skipped because the study was cancelled
        parameter_names: Uncertain inputs in column order
        outputs: Output values used for the statistics
        inputs: Parameter name -> sampled values (rows of A then B)
        confidence: Confidence level of the interval of the mean
        first_order / total_order: Sobol indices per parameter
    """
    n_samples: int
    n_failed: int
    parameter_names: List[str]
    outputs: np.ndarray
    inputs: Dict[str, np.ndarray]
    mean: float
    std: float
    ci_low: float
    ci_high: float
    confidence: float
    n_cancelled: int = 0
    percentiles: Dict[str, float] = field(default_factory=dict)
    first_order: Dict[str, float] = field(default_factory=dict)
    total_order: Dict[str, float] = field(default_factory=dict)
    variance: float = 0.0
    elapsed_time: float = 0.0
    warnings: List[str] = field(default_factory=list)

    def probability_above(self, threshold: float) -> float:
        """Empirical probability that the output exceeds ``threshold``."""
        if self.outputs.size == 0:
            return float('nan')
        return float(np.mean(self.outputs > threshold))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'n_samples': self.n_samples,
            'n_failed': self.n_failed,
            'n_cancelled': self.n_cancelled,
            'mean': self.mean,
            'std': self.std,
            'confidence': self.confidence,
            'ci_of_mean': [self.ci_low, self.ci_high],
            'percentiles': dict(self.percentiles),
            'first_order': dict(self.first_order),
            'total_order': dict(self.total_order),
            'elapsed_time': self.elapsed_time,
            'warnings': list(self.warnings),
        }


def summarize(values: np.ndarray, confidence: float,
              percentiles: Sequence[float]) -> Tuple[float, float, float, float, Dict[str, float]]:
    """Mean, std, t-interval of the mean and percentiles of finite values."""
    n = values.size
    mean = float(np.mean(values))
    std = float(np.std(values, ddof=1)) if n > 1 else 0.0
    if n > 1 and std > 0:
        half = float(stats.t.ppf(0.5 + confidence / 2.0, n - 1)) * std / np.sqrt(n)
    else:
        half = 0.0
    pct = {f"P{p:g}": float(np.percentile(values, p)) for p in percentiles}
    return mean, std, mean - half, mean + half, pct


class UncertaintyEngine:
    """
    Saltelli-sampled Monte Carlo over a simulation context.

    Args:
        context: Nominal simulation context
        parameters: Uncertain inputs
        config: UncertaintyConfig
        quantity: ``(results, mesh) -> float`` quantity of interest
            (defaults to the peak final temperature)
        model: Optional ``values -> float`` replacing the thermal solve
            entirely (parameter dict in, scalar out)
        token: Cancellation token checked between samples
    """

    def __init__(self, context: Optional[SimulationContext],
                 parameters: Sequence[ParameterDistribution],
                 config: Optional[UncertaintyConfig] = None,
                 quantity: Optional[Callable[[ThermalResults, Any], float]] = None,
                 model: Optional[Callable[[Dict[str, float]], float]] = None,
                 token: Optional[CancellationToken] = None):
        if not parameters:
            raise ValueError("No uncertain parameters defined")
        names = [p.name for p in parameters]
        if len(set(names)) != len(names):
            raise ValueError("Parameter names must be unique")
        if context is None and model is None:
            raise ValueError("Either a context or a model function is required")
        self.context = context
        self.parameters = list(parameters)
        self.config = config or UncertaintyConfig()
        self.quantity = quantity or (lambda results, mesh: results.final_field.max_temp)
        self.model = model
        self.token = token or CancellationToken()
        self.logger = get_logger()

    def evaluate(self, values: Dict[str, float]) -> float:
        """One model evaluation for a parameter set."""
        if self.model is not None:
            return float(self.model(values))
        context = apply_parameters(self.context, values, self.parameters)
        results = ThermalSolver(context).solve()
        return float(self.quantity(results, context.mesh))

    def _evaluate_row(self, row: np.ndarray) -> Optional[float]:
        """Output for one design row; NaN if it failed, None if cancelled."""
        if self.token.is_cancelled:
            return None
        values = {p.name: float(v) for p, v in zip(self.parameters, row)}
        try:
            return self.evaluate(values)
        except (ThermalEngineError, ValueError, FloatingPointError) as e:
            self.logger.warning(f"UQ sample failed and will be dropped: {e}")
            return np.nan

    def design(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Physical-space A, B and hybrid matrices (d, N, d)."""
        n, d = self.config.n_samples, len(self.parameters)
        UA, UB = saltelli_unit_samples(n, d, self.config.seed)
        A = np.column_stack([p.from_unit(UA[:, i]) for i, p in enumerate(self.parameters)])
        B = np.column_stack([p.from_unit(UB[:, i]) for i, p in enumerate(self.parameters)])
        AB = np.repeat(A[None, :, :], d, axis=0)
        for i in range(d):
            AB[i, :, i] = B[:, i]
        return A, B, AB

    def run(self) -> UQResult:
        """
        Evaluate the design and compute statistics and Sobol indices.

        Raises:
            CancellationError: Carrying statistics of the samples finished
                before cancellation.
        """
        cfg = self.config
        start = time.time()
        n, d = cfg.n_samples, len(self.parameters)
        A, B, AB = self.design()
        rows = [A, B] + ([AB[i] for i in range(d)] if cfg.compute_sensitivity else [])
        design = np.concatenate(rows)

        with log_section("Uncertainty Quantification"):
            self.logger.info(f"UQ: {d} parameter(s), N={n}, {design.shape[0]} evaluations "
                             f"on {cfg.num_workers} worker(s)")
            workers = max(1, int(cfg.num_workers))
            if workers > 1:
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="uq") as executor:
                    values = list(executor.map(self._evaluate_row, design))
            else:
                values = []
                for j, row in enumerate(design):
                    values.append(self._evaluate_row(row))
                    if (j + 1) % max(1, design.shape[0] // 10) == 0:
                        self.logger.log_progress(j + 1, design.shape[0], "UQ samples")

            skipped = np.array([v is None for v in values], dtype=bool)
            outputs = np.array([np.nan if v is None else v for v in values], dtype=np.float64)

            if skipped.any():
                done = np.isfinite(outputs[:2 * n])
                n_failed = int((~skipped & ~np.isfinite(outputs)).sum())
                partial = None
                if done.any():
                    partial = self._result(design[:2 * n][done], outputs[:2 * n][done],
                                           n_failed, start, [], n_cancelled=int(skipped.sum()))
                self.token.check(partial_result=partial, completed=int((~skipped).sum()),
                                 where="uncertainty sampling")

            f_A, f_B = outputs[:n], outputs[n:2 * n]
            base = np.concatenate([f_A, f_B])
            ok = np.isfinite(base)
            warnings: List[str] = []
            n_failed = int((~np.isfinite(outputs)).sum())
            if n_failed:
                warnings.append(f"{n_failed} of {outputs.size} evaluations failed and were dropped")
            if not ok.any():
                raise ThermalEngineError("Every UQ sample failed", {'n_evaluations': int(outputs.size)})

            result = self._result(np.concatenate([A, B])[ok], base[ok], n_failed, start, warnings)

            if cfg.compute_sensitivity:
                f_AB = outputs[2 * n:].reshape(d, n)
                keep = np.isfinite(f_A) & np.isfinite(f_B) & np.all(np.isfinite(f_AB), axis=0)
                first, total, variance = sobol_indices(f_A[keep], f_B[keep], f_AB[:, keep])
                if variance == 0.0:
                    warnings.append("Output variance is zero; Sobol indices set to 0")
                result.variance = variance
                result.first_order = {p.name: float(s) for p, s in zip(self.parameters, first)}
                result.total_order = {p.name: float(s) for p, s in zip(self.parameters, total)}

            result.elapsed_time = time.time() - start
            self.logger.info(f"UQ complete: mean={result.mean:.4f}, std={result.std:.4f}, "
                             f"{cfg.confidence:.0%} CI of mean [{result.ci_low:.4f}, {result.ci_high:.4f}]")
        return result

    def _result(self, inputs: np.ndarray, outputs: np.ndarray, n_failed: int,
                start: float, warnings: List[str], n_cancelled: int = 0) -> UQResult:
        cfg = self.config
        mean, std, lo, hi, pct = summarize(outputs, cfg.confidence, cfg.percentiles)
        return UQResult(
            n_samples=int(outputs.size), n_failed=n_failed, n_cancelled=n_cancelled,
            parameter_names=[p.name for p in self.parameters],
            outputs=outputs,
            inputs={p.name: inputs[:, i] for i, p in enumerate(self.parameters)},
            mean=mean, std=std, ci_low=lo, ci_high=hi, confidence=cfg.confidence,
            percentiles=pct, elapsed_time=time.time() - start, warnings=warnings)


__all__ = [
    'DistributionType',
    'ParameterDistribution',
    'apply_parameters',
    'saltelli_unit_samples',
    'sobol_indices',
    'summarize',
    'UQResult',
    'UncertaintyEngine',
]
