"""
Convergence diagnostics for multi-chain posterior samples

Rank-normalized split R-hat and bulk/tail effective sample sizes
(Vehtari, Gelman, Simpson, Carpenter & Buerkner 2021), computed per
parameter after dropping the same number of warmup rows from every chain.
"""

from __future__ import annotations

from typing import List, Optional, Sequence

import arviz as az
import numpy as np
import pandas as pd

from .config import RHAT_THRESHOLD, ESS_THRESHOLD
from .errors import ConfigurationError, InsufficientChainsError

MIN_DRAWS = 4
_EPS = np.finfo(float).resolution


# =============================================================================
# Chain handling
# =============================================================================

def _as_frames(chains, names: Optional[Sequence[str]] = None) -> List[pd.DataFrame]:
    frames = []
    for i, chain in enumerate(chains):
        if isinstance(chain, pd.DataFrame):
            frames.append(chain)
            continue
        arr = np.asarray(chain, dtype=float)
        if arr.ndim == 1:
            arr = arr[:, None]
        if arr.ndim != 2:
            raise ConfigurationError(f"Chain {i} must be 2-D (iterations x parameters), got shape {arr.shape}")
        cols = list(names) if names is not None else [f"theta[{j}]" for j in range(arr.shape[1])]
        if len(cols) != arr.shape[1]:
            raise ConfigurationError(f"Chain {i} has {arr.shape[1]} columns but {len(cols)} names were given")
        frames.append(pd.DataFrame(arr, columns=cols))
    return frames


def stack_chains(chains, warmup: int = 0, names: Optional[Sequence[str]] = None):
    """Drop warmup rows and stack chains into a (chain, draw, parameter) array.

    Returns (array, parameter_names).
    """
    if len(chains) < 2:
        raise InsufficientChainsError(
            f"R-hat needs at least 2 chains, got {len(chains)}"
        )
    if warmup < 0:
        raise ConfigurationError(f"warmup must be non-negative, got {warmup}")
    frames = _as_frames(chains, names)
    columns = list(frames[0].columns)
    shape = frames[0].shape
    for i, frame in enumerate(frames[1:], start=1):
        if frame.shape != shape:
            raise ConfigurationError(f"Chain {i} has shape {frame.shape}, chain 0 has {shape}")
        if list(frame.columns) != columns:
            raise ConfigurationError(f"Chain {i} has different parameter columns from chain 0")
    n_draws = shape[0] - warmup
    if n_draws < MIN_DRAWS:
        raise ConfigurationError(
            f"Only {n_draws} post-warmup draws per chain remain (need at least {MIN_DRAWS})"
        )
    draws = np.stack([f.to_numpy(dtype=float)[warmup:] for f in frames])
    return draws, columns


# =============================================================================
# R-hat and effective sample size
# =============================================================================

def _stuck_rhat(ary: np.ndarray) -> Optional[float]:
    """R-hat when no chain moves: 1.0 if all chains sit on one value, inf if they differ.

    None when any chain varies.
    """
    spread = ary.max(axis=1) - ary.min(axis=1)
    if np.any(spread >= _EPS):
        return None
    return 1.0 if np.ptp(ary) < _EPS else np.inf


def rhat(ary: np.ndarray) -> float:
    """Rank-normalized split R-hat of a (chain, draw) array"""
    ary = np.asarray(ary, dtype=float)
    if not np.all(np.isfinite(ary)):
        return np.nan
    stuck = _stuck_rhat(ary)
    if stuck is not None:
        return stuck
    return float(az.rhat(ary, method='rank'))


def ess(ary: np.ndarray, method: str = 'bulk') -> float:
    """Bulk or tail effective sample size of a (chain, draw) array"""
    ary = np.asarray(ary, dtype=float)
    if not np.all(np.isfinite(ary)):
        return np.nan
    return float(az.ess(ary, method=method))


# =============================================================================
# Summary
# =============================================================================

def quantile_label(q: float) -> str:
    return f"{100 * q:g}%"


def summarize_chains(chains, warmup: int = 0, probs: Sequence[float] = (0.025, 0.5, 0.975),
                     names: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Per-parameter posterior summary and convergence diagnostics.

    ``chains`` is a list of equal-shaped DataFrames (iterations x named
    parameters) or 2-D arrays with ``names``. The first ``warmup`` rows of
    every chain are discarded before anything is computed.
    """
    draws, columns = stack_chains(chains, warmup=warmup, names=names)
    probs = [float(q) for q in probs]
    rows = []
    for j, name in enumerate(columns):
        ary = draws[:, :, j]
        pooled = ary.ravel()
        row = {
            'mean': float(pooled.mean()),
            'sd': float(pooled.std(ddof=1)),
        }
        for q, value in zip(probs, np.quantile(pooled, probs)):
            row[quantile_label(q)] = float(value)
        row['r_hat'] = rhat(ary)
        row['ess_bulk'] = ess(ary, method='bulk')
        row['ess_tail'] = ess(ary, method='tail')
        rows.append(row)
    summary = pd.DataFrame(rows, index=pd.Index(columns, name='parameter'))
    return summary


def convergence_report(summary: pd.DataFrame, rhat_threshold: float = RHAT_THRESHOLD,
                       ess_threshold: float = ESS_THRESHOLD, verbose: bool = True) -> dict:
    """Count parameters failing the R-hat / ESS thresholds and print a short report"""
    rhat_vals = summary['r_hat'].replace([np.inf], np.nan)
    n_inf = int(np.isinf(summary['r_hat']).sum())
    n_nan = int(summary['r_hat'].isna().sum())
    ess_vals = summary['ess_bulk'].dropna()
    high_rhat = summary.index[(summary['r_hat'] > rhat_threshold)].tolist()
    low_ess = summary.index[(summary['ess_bulk'] < ess_threshold)].tolist()

    report = {
        'rhat': {
            'mean': float(rhat_vals.mean()),
            'max': float(summary['r_hat'].max()),
            'n_high': len(high_rhat),
            'n_undefined': n_nan,
            'n_total': int(len(summary)),
            'threshold': rhat_threshold,
        },
        'ess_bulk': {
            'mean': float(ess_vals.mean()) if len(ess_vals) else float('nan'),
            'min': float(ess_vals.min()) if len(ess_vals) else float('nan'),
            'n_low': len(low_ess),
            'threshold': ess_threshold,
        },
        'ess_tail_min': float(summary['ess_tail'].min()),
        'high_rhat': high_rhat,
        'low_ess': low_ess,
        'converged': not high_rhat and not low_ess and n_nan == 0,
    }

    if verbose:
        print(f"\n📊 RHAT statistics:")
        print(f"  Mean: {report['rhat']['mean']:.4f}")
        print(f"  Max: {report['rhat']['max']:.4f}")
        print(f"  Parameters with RHAT > {rhat_threshold}: {len(high_rhat)} / {len(summary)}")
        if n_inf:
            print(f"  ⚠️  {n_inf} parameter(s) stuck at different constants across chains")
        print(f"\n📊 ESS statistics:")
        print(f"  Min bulk ESS: {report['ess_bulk']['min']:.0f}")
        print(f"  Min tail ESS: {report['ess_tail_min']:.0f}")
        print(f"  Parameters with ESS < {ess_threshold}: {len(low_ess)} / {len(summary)}")
        if report['converged']:
            print(f"\n✅ Convergence achieved! RHAT <= {rhat_threshold} and ESS >= {ess_threshold}")
        else:
            print("\n⚠️ Convergence not fully achieved. Consider increasing draws/tunes/chains.")
    return report
