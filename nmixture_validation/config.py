"""
Configuration for N-mixture simulation studies

Holds the canonical covariate orderings, the coefficient caps they imply,
the structural model variant, the true parameter vectors, and the
generation / fitting settings consumed by the simulator and harness.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, asdict
from typing import Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError

# =============================================================================
# Canonical covariate orderings
# =============================================================================

# Occupancy and abundance both draw from the site covariates, in this order.
SITE_COVARIATES = (
    'temperature',
    'precipitation',
    'elevation',
    'forest',
    'grassland',
    'cropland',
    'urban',
)

# Detection draws from the visit covariates, in this order.
VISIT_COVARIATES = (
    'visit_temperature',
    'visit_precipitation',
    'wind',
    'cloud_cover',
    'moon_illumination',
)

SITE_ID = 'site_id'
VISIT_ID = 'visit_id'

# Intercept + every covariate of the ordering.
MAX_OCCUPANCY_COEFS = len(SITE_COVARIATES) + 1
MAX_ABUNDANCE_COEFS = len(SITE_COVARIATES) + 1
MAX_DETECTION_COEFS = len(VISIT_COVARIATES) + 1

POISSON = 'poisson'
NEGBIN = 'negbin'
FAMILIES = (POISSON, NEGBIN)

OUTPUT_DIR = os.path.join(os.getcwd(), 'outputs')

# Default thresholds, as used when checking fitted models
RHAT_THRESHOLD = 1.01
ESS_THRESHOLD = 400


@dataclass(frozen=True)
class ModelVariant:
    """Structural variant: abundance family x zero inflation"""
    family: str = POISSON
    zero_inflated: bool = False

    def __post_init__(self):
        if self.family not in FAMILIES:
            raise ConfigurationError(
                f"Unknown abundance family {self.family!r}; expected one of {FAMILIES}"
            )

    @property
    def uses_occupancy(self) -> bool:
        return self.zero_inflated

    @property
    def uses_dispersion(self) -> bool:
        return self.family == NEGBIN

    @property
    def name(self) -> str:
        base = 'NB' if self.family == NEGBIN else 'P'
        return f"ZI{base}" if self.zero_inflated else base


@dataclass(frozen=True)
class ParameterSet:
    """True parameter vectors for one simulation.

    beta  -- abundance coefficients (log link)
    alpha -- detection coefficients (logit link)
    delta -- occupancy coefficients (logit link), zero-inflated variant only
    phi   -- negative-binomial dispersion, negative-binomial variant only
    """
    beta: Tuple[float, ...]
    alpha: Tuple[float, ...]
    delta: Optional[Tuple[float, ...]] = None
    phi: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, 'beta', _as_tuple(self.beta))
        object.__setattr__(self, 'alpha', _as_tuple(self.alpha))
        if self.delta is not None:
            object.__setattr__(self, 'delta', _as_tuple(self.delta))
        if self.phi is not None:
            object.__setattr__(self, 'phi', float(self.phi))

    def validate(self, variant: ModelVariant):
        """Check vector lengths against the covariate caps for this variant"""
        _check_length('beta', self.beta, MAX_ABUNDANCE_COEFS)
        _check_length('alpha', self.alpha, MAX_DETECTION_COEFS)
        if variant.uses_occupancy:
            if self.delta is None:
                raise ConfigurationError("Zero-inflated variant requires occupancy coefficients (delta)")
            _check_length('delta', self.delta, MAX_OCCUPANCY_COEFS)
        if variant.uses_dispersion:
            if self.phi is None or not np.isfinite(self.phi) or self.phi <= 0:
                raise ConfigurationError(
                    f"Negative-binomial variant requires a positive dispersion phi, got {self.phi!r}"
                )

    def as_dict(self, variant: Optional[ModelVariant] = None) -> dict:
        """Flat {'beta[0]': ..., 'phi': ...} mapping of the scalars in use"""
        out = {}
        vectors = [('beta', self.beta), ('alpha', self.alpha)]
        if self.delta is not None and (variant is None or variant.uses_occupancy):
            vectors.append(('delta', self.delta))
        for name, values in vectors:
            for i, value in enumerate(values):
                out[f"{name}[{i}]"] = value
        if self.phi is not None and (variant is None or variant.uses_dispersion):
            out['phi'] = self.phi
        return out


def _as_tuple(values) -> Tuple[float, ...]:
    return tuple(float(v) for v in np.atleast_1d(np.asarray(values, dtype=float)))


def _check_length(name, values, cap):
    if len(values) < 1:
        raise ConfigurationError(f"Coefficient vector {name} is empty; it needs at least an intercept")
    if len(values) > cap:
        raise ConfigurationError(
            f"Coefficient vector {name} has {len(values)} entries; the covariate cap is {cap} "
            f"(intercept + {cap - 1} covariates)"
        )


@dataclass
class GenerationConfig:
    """Settings for one call of the generative simulator"""
    beta: Sequence[float]
    alpha: Sequence[float]
    delta: Optional[Sequence[float]] = None
    phi: Optional[float] = None
    family: str = POISSON
    zero_inflated: bool = False
    nsites: Optional[int] = None
    nvisits: Optional[int] = None
    seed: int = 1

    @property
    def variant(self) -> ModelVariant:
        return ModelVariant(family=self.family, zero_inflated=self.zero_inflated)

    @property
    def params(self) -> ParameterSet:
        return ParameterSet(beta=self.beta, alpha=self.alpha, delta=self.delta, phi=self.phi)


@dataclass
class FitConfig:
    """Settings handed to the fitting engine and the diagnostics engine.

    ``niter`` counts every iteration per chain, warmup included. Engines
    thin the warmup and post-warmup blocks separately, so a returned chain
    has ``warmup_rows + draw_rows`` rows and its first ``warmup_rows`` are
    warmup draws.
    """
    nchains: int = 3
    niter: int = 2000
    warmup: int = 1000
    thin: int = 1
    monitors: Tuple[str, ...] = ('beta', 'alpha', 'delta', 'phi', 'N', 'p')
    interval_prob: float = 0.95

    def __post_init__(self):
        if self.nchains < 2:
            raise ConfigurationError(f"nchains must be at least 2 for R-hat, got {self.nchains}")
        if self.thin < 1:
            raise ConfigurationError(f"thin must be a positive integer, got {self.thin}")
        if self.warmup < 0 or self.niter <= self.warmup:
            raise ConfigurationError(
                f"niter ({self.niter}) must exceed warmup ({self.warmup})"
            )
        if not 0 < self.interval_prob < 1:
            raise ConfigurationError(f"interval_prob must lie in (0, 1), got {self.interval_prob}")
        self.monitors = tuple(self.monitors)

    @property
    def warmup_rows(self) -> int:
        """Leading warmup rows of a thinned chain (warmup block thinned on its own)"""
        return -(-self.warmup // self.thin)

    @property
    def draws(self) -> int:
        """Post-warmup iterations per chain, before thinning"""
        return self.niter - self.warmup

    @property
    def draw_rows(self) -> int:
        return -(-self.draws // self.thin)

    @property
    def quantiles(self) -> Tuple[float, float, float]:
        tail = (1.0 - self.interval_prob) / 2.0
        return (tail, 0.5, 1.0 - tail)


def load_config(path):
    """Load generation and fitting settings from a JSON file.

    The file holds a ``generation`` object (GenerationConfig fields) and an
    optional ``fitting`` object (FitConfig fields). Returns (generation,
    fitting), with fitting None when the file has no fitting section.
    """
    with open(path) as f:
        raw = json.load(f)
    if 'generation' not in raw:
        raise ConfigurationError(f"Config file {path} has no 'generation' section")
    try:
        generation = GenerationConfig(**raw['generation'])
        fitting = FitConfig(**raw['fitting']) if 'fitting' in raw else None
    except TypeError as e:
        raise ConfigurationError(f"Invalid config file {path}: {e}") from e
    return generation, fitting


def config_to_dict(generation: GenerationConfig, fitting: FitConfig) -> dict:
    """JSON-ready form of a generation/fitting pair"""
    gen = asdict(generation)
    for key in ('beta', 'alpha', 'delta'):
        if gen[key] is not None:
            gen[key] = [float(v) for v in gen[key]]
    fit = asdict(fitting)
    fit['monitors'] = list(fit['monitors'])
    return {'generation': gen, 'fitting': fit}
