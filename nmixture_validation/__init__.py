"""
N-mixture model validation

Simulate hierarchical abundance survey data under known parameters, fit it
with an external Bayesian sampler, and check convergence, bias and
credible-interval coverage across many replicates.
"""

from .config import (
    SITE_COVARIATES,
    VISIT_COVARIATES,
    POISSON,
    NEGBIN,
    ModelVariant,
    ParameterSet,
    GenerationConfig,
    FitConfig,
    load_config,
)
from .errors import (
    NMixtureError,
    ConfigurationError,
    InsufficientDataError,
    InsufficientChainsError,
    ReplicateFailure,
)
from .covariates import build_design_matrix, standardize_covariates, make_landscape
from .simulate import SimulatedDataset, simulate_dataset, simulate_from_config
from .diagnostics import summarize_chains, convergence_report
from .harness import ReplicationHarness, HarnessResult, run_replicate, aggregate_rows

__version__ = '0.1.0'
