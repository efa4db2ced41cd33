"""
Replication & calibration harness

Runs many independent generate -> fit -> diagnose cycles, one per seed,
and aggregates per-parameter bias and credible-interval coverage across
the replicates. A well-calibrated fit should show empirical coverage close
to the nominal interval level as the number of replicates grows.
"""

from __future__ import annotations

import sys
import time
import traceback
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from tqdm import tqdm

from .artifacts import CheckpointManager
from .config import FitConfig, GenerationConfig, ParameterSet
from .diagnostics import quantile_label, summarize_chains
from .errors import ConfigurationError, InsufficientChainsError, InsufficientDataError, ReplicateFailure
from .simulate import SimulatedDataset, simulate_dataset

# Second entry of the truth generator's seed sequence, keeps truth draws
# independent of the generator stream seeded with ``sim`` alone.
_TRUTH_STREAM = 1

TruthSource = Union[None, ParameterSet, Callable[[np.random.Generator], ParameterSet]]


@dataclass
class ReplicateRecord:
    """Outcome of one replicate; ``error`` is set when it was skipped"""
    sim: int
    seed: int
    truth: ParameterSet
    dataset: Optional[SimulatedDataset] = None
    summary: Optional[pd.DataFrame] = None
    rows: Optional[pd.DataFrame] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def failure(self) -> Optional[ReplicateFailure]:
        return ReplicateFailure(self.sim, self.error) if self.failed else None


def parameter_group(name: str) -> str:
    """'beta[1]' -> 'beta'"""
    return name.split('[', 1)[0]


def coverage_rows(summary: pd.DataFrame, truth: pd.Series, lower_col: str, upper_col: str,
                  sim: int) -> pd.DataFrame:
    """Centered estimates and coverage indicators for every parameter with a known truth"""
    common = [name for name in summary.index if name in truth.index]
    s = summary.loc[common]
    t = truth.loc[common].to_numpy(dtype=float)
    lower = s[lower_col].to_numpy(dtype=float)
    upper = s[upper_col].to_numpy(dtype=float)
    mean = s['mean'].to_numpy(dtype=float)
    return pd.DataFrame({
        'sim': sim,
        'parameter': common,
        'group': [parameter_group(name) for name in common],
        'truth': t,
        'mean': mean,
        'lower': lower,
        'upper': upper,
        'centered_mean': mean - t,
        'centered_lower': lower - t,
        'centered_upper': upper - t,
        'covered': ((lower <= t) & (t <= upper)).astype(int),
        'r_hat': s['r_hat'].to_numpy(dtype=float),
        'ess_bulk': s['ess_bulk'].to_numpy(dtype=float),
        'ess_tail': s['ess_tail'].to_numpy(dtype=float),
    })


def aggregate_rows(rows: pd.DataFrame, by: str = 'parameter') -> pd.DataFrame:
    """Mean centered estimate, bound offsets and coverage rate per parameter (or group)"""
    if by not in ('parameter', 'group'):
        raise ConfigurationError(f"Can only aggregate by 'parameter' or 'group', got {by!r}")
    columns = ['n_replicates', 'centered_mean', 'centered_lower', 'centered_upper', 'coverage', 'mean_r_hat']
    if rows.empty:
        return pd.DataFrame(columns=columns)
    table = rows.groupby(by, sort=False).agg(
        n_replicates=('sim', 'nunique'),
        centered_mean=('centered_mean', 'mean'),
        centered_lower=('centered_lower', 'mean'),
        centered_upper=('centered_upper', 'mean'),
        coverage=('covered', 'mean'),
        mean_r_hat=('r_hat', 'mean'),
    )
    return table[columns]


def _resolve_truth(truth: TruthSource, sim: int, generation: GenerationConfig) -> ParameterSet:
    if truth is None:
        return generation.params
    if isinstance(truth, ParameterSet):
        return truth
    drawn = truth(np.random.default_rng([sim, _TRUTH_STREAM]))
    if isinstance(drawn, dict):
        drawn = ParameterSet(**drawn)
    if not isinstance(drawn, ParameterSet):
        raise ConfigurationError(f"Truth sampler returned {type(drawn).__name__}, expected ParameterSet")
    return drawn


def _check_chains(chains, fitting: FitConfig):
    if not isinstance(chains, (list, tuple)):
        raise ReplicateFailure(None, f"engine returned {type(chains).__name__}, expected a list of chains")
    if len(chains) != fitting.nchains:
        raise ReplicateFailure(None, f"engine returned {len(chains)} chains, expected {fitting.nchains}")
    for i, chain in enumerate(chains):
        try:
            values = chain.to_numpy(dtype=float) if isinstance(chain, pd.DataFrame) else np.asarray(chain, dtype=float)
        except (TypeError, ValueError) as e:
            raise ReplicateFailure(None, f"chain {i} is not numeric: {e}") from e
        if values.ndim != 2:
            raise ReplicateFailure(None, f"chain {i} is not a 2-D sample matrix")
        if not np.all(np.isfinite(values)):
            raise ReplicateFailure(None, f"chain {i} holds non-finite draws")


def run_replicate(sim: int, sites: pd.DataFrame, visits: pd.DataFrame, generation: GenerationConfig,
                  fitting: FitConfig, engine, truth: TruthSource = None,
                  keep_dataset: bool = True) -> ReplicateRecord:
    """One generate -> fit -> diagnose cycle with seed ``sim``.

    Configuration and data-size errors propagate; anything else going wrong
    in fitting or diagnostics is recorded on the returned record.
    """
    params = _resolve_truth(truth, sim, generation)
    dataset = simulate_dataset(
        sites, visits,
        variant=generation.variant,
        params=params,
        seed=sim,
        nsites=generation.nsites,
        nvisits=generation.nvisits,
    )
    record = ReplicateRecord(sim=sim, seed=sim, truth=params, dataset=dataset if keep_dataset else None)
    data, constants = dataset.model_inputs()

    try:
        chains = engine.fit(dataset.variant, data, constants, fitting, random_seed=sim)
    except (ConfigurationError, InsufficientDataError):
        raise
    except Exception as e:
        record.error = f"fitting failed: {type(e).__name__}: {e}"
        return record

    try:
        _check_chains(chains, fitting)
        summary = summarize_chains(chains, warmup=fitting.warmup_rows, probs=fitting.quantiles)
    except ReplicateFailure as e:
        record.error = f"malformed chains: {e.message}"
        return record
    except (InsufficientChainsError, ConfigurationError) as e:
        record.error = f"malformed chains: {e}"
        return record

    lower, _, upper = (quantile_label(q) for q in fitting.quantiles)
    record.summary = summary
    record.rows = coverage_rows(summary, dataset.truth(), lower, upper, sim)
    return record


def _replicate_job(sim, sites, visits, generation, fitting, engine, truth, keep_dataset, checkpoint_dir):
    record = run_replicate(sim, sites, visits, generation, fitting, engine, truth, keep_dataset)
    if checkpoint_dir is not None:
        CheckpointManager(checkpoint_dir).save_replicate(sim, record)
    return record


class HarnessResult:
    """Append-only collection of replicate records from one harness run"""

    def __init__(self, records: List[ReplicateRecord], interval_prob: float = 0.95):
        self.records = sorted(records, key=lambda r: r.sim)
        self.interval_prob = interval_prob

    @property
    def successes(self) -> List[ReplicateRecord]:
        return [r for r in self.records if not r.failed]

    @property
    def failures(self) -> List[ReplicateFailure]:
        return [r.failure() for r in self.records if r.failed]

    @property
    def rows(self) -> pd.DataFrame:
        frames = [r.rows for r in self.successes if r.rows is not None]
        if not frames:
            return pd.DataFrame(columns=['sim', 'parameter', 'group', 'covered'])
        return pd.concat(frames, ignore_index=True)

    def aggregate(self, by: str = 'parameter') -> pd.DataFrame:
        return aggregate_rows(self.rows, by=by)

    def report(self, by: str = 'parameter'):
        """Print the aggregated calibration table and the failed replicates"""
        table = self.aggregate(by=by)
        print("\n" + "=" * 80)
        print(f"CALIBRATION SUMMARY (nominal coverage {self.interval_prob:.0%})")
        print("=" * 80)
        print(f"Replicates: {len(self.successes)} succeeded, {len(self.failures)} failed")
        if not table.empty:
            print(table.to_string(float_format=lambda v: f"{v:.4f}"))
        if self.failures:
            print(f"\n⚠️  {len(self.failures)} replicate(s) skipped:")
            for failure in self.failures:
                print(f"  - {failure}")
        return table


class ReplicationHarness:
    """Drives R independent replicates and collects their coverage rows.

    ``truth`` is a fixed ParameterSet, a callable drawing one from a
    seed-scoped generator, or None to use ``generation``'s vectors.
    """

    def __init__(self, sites, visits, generation: GenerationConfig, fitting: FitConfig, engine,
                 truth: TruthSource = None, n_jobs: int = 1, backend=None, checkpoint_dir=None,
                 keep_datasets: bool = True, verbose: bool = True):
        self.sites = sites
        self.visits = visits
        self.generation = generation
        self.fitting = fitting
        self.engine = engine
        self.truth = truth
        self.n_jobs = n_jobs
        self.backend = backend
        self.checkpoint_dir = checkpoint_dir
        self.keep_datasets = keep_datasets
        self.verbose = verbose

    def run(self, n_replicates: int) -> HarnessResult:
        if n_replicates < 1:
            raise ConfigurationError(f"n_replicates must be positive, got {n_replicates}")

        if self.verbose:
            print("\n" + "=" * 80)
            print("REPLICATION & CALIBRATION")
            print("=" * 80)
            print(f"  Variant: {self.generation.variant.name}")
            print(f"  Replicates: {n_replicates}")
            print(f"  Sites x visits: {self.generation.nsites} x {self.generation.nvisits}")
            print(f"  Chains: {self.fitting.nchains}, iterations: {self.fitting.niter} "
                  f"(warmup {self.fitting.warmup}, thin {self.fitting.thin})")
            sys.stdout.flush()

        completed = {}
        pending = list(range(1, n_replicates + 1))
        if self.checkpoint_dir is not None:
            checkpoints = CheckpointManager(self.checkpoint_dir)
            completed = checkpoints.completed(n_replicates)
            pending = checkpoints.pending(n_replicates)
            if completed and self.verbose:
                print(f"  📂 Found {len(completed)}/{n_replicates} completed replicates")

        start_time = time.time()
        try:
            new_records = Parallel(n_jobs=self.n_jobs, backend=self.backend)(
                delayed(_replicate_job)(
                    sim, self.sites, self.visits, self.generation, self.fitting, self.engine,
                    self.truth, self.keep_datasets, self.checkpoint_dir,
                )
                for sim in tqdm(pending, desc="Replicates", disable=not self.verbose)
            )
        except (ConfigurationError, InsufficientDataError) as e:
            print(f"❌ Harness aborted: {e}")
            traceback.print_exc()
            raise

        result = HarnessResult(list(completed.values()) + list(new_records),
                               interval_prob=self.fitting.interval_prob)
        if self.verbose:
            elapsed_time = time.time() - start_time
            print(f"\n✅ {len(pending)} replicate(s) run in {elapsed_time / 60:.1f} minutes")
            if result.failures:
                print(f"⚠️  {len(result.failures)} replicate(s) failed and were excluded from aggregation")
        return result
