"""
Fitting engines

The harness treats model fitting as an opaque capability:

    engine.fit(model_description, data, constants, fitting, random_seed)
        -> list of per-chain DataFrames (iterations x named parameters)

Returned chains include the warmup iterations (thinned); the diagnostics
engine drops them. ``PyMCEngine`` is the bundled implementation: the
structural variant is the model description, and the PyMC model below is
its declarative form.
"""

from __future__ import annotations

import sys
import time
from typing import List, Optional, Protocol

import numpy as np
import pandas as pd
import pymc as pm

from .config import FitConfig, ModelVariant
from .errors import ConfigurationError
from .posterior import posterior_to_chains

# Keeps the Poisson / NB mean strictly positive when z == 0.
_MU_FLOOR = 1e-10


class FittingEngine(Protocol):
    def fit(self, model_description, data: dict, constants: dict, fitting: FitConfig,
            random_seed: Optional[int] = None) -> List[pd.DataFrame]:
        ...


def _check_inputs(variant: ModelVariant, data: dict, constants: dict):
    required = ['X_abund', 'X_det', 'nsites', 'nvisits', 'site_index']
    if variant.uses_occupancy:
        required.append('X_occ')
    missing = [k for k in required if k not in constants]
    if missing:
        raise ConfigurationError(f"Constants for variant {variant.name} are missing: {missing}")
    y = np.asarray(data['y'])
    nsites, nvisits = int(constants['nsites']), int(constants['nvisits'])
    if y.shape != (nvisits,):
        raise ConfigurationError(f"Observed counts have shape {y.shape}, expected ({nvisits},)")
    if constants['X_det'].shape[0] != nvisits:
        raise ConfigurationError("Detection design matrix rows do not match the number of visits")
    if constants['X_abund'].shape[0] != nsites:
        raise ConfigurationError("Abundance design matrix rows do not match the number of sites")
    if variant.uses_occupancy and constants['X_occ'].shape[0] != nsites:
        raise ConfigurationError("Occupancy design matrix rows do not match the number of sites")
    site_index = np.asarray(constants['site_index'])
    if site_index.shape != (nvisits,) or site_index.min(initial=0) < 0 or site_index.max(initial=0) >= nsites:
        raise ConfigurationError("site_index must map every visit to a site row in [0, nsites)")


def build_nmixture_model(variant: ModelVariant, data: dict, constants: dict) -> pm.Model:
    """Build the PyMC N-mixture model for one structural variant"""
    _check_inputs(variant, data, constants)
    y = np.asarray(data['y'], dtype=np.int64)
    X_abund = np.asarray(constants['X_abund'], dtype=float)
    X_det = np.asarray(constants['X_det'], dtype=float)
    site_index = np.asarray(constants['site_index'], dtype=np.int64)
    nsites = int(constants['nsites'])

    # N must start at or above the largest count seen at its site
    max_count = np.zeros(nsites, dtype=np.int64)
    np.maximum.at(max_count, site_index, y)

    with pm.Model() as model:
        beta = pm.Normal('beta', mu=0, sigma=1, shape=X_abund.shape[1])
        alpha = pm.Normal('alpha', mu=0, sigma=1, shape=X_det.shape[1])
        lam = pm.math.exp(pm.math.dot(X_abund, beta))

        if variant.uses_occupancy:
            X_occ = np.asarray(constants['X_occ'], dtype=float)
            delta = pm.Normal('delta', mu=0, sigma=1, shape=X_occ.shape[1])
            psi = pm.math.sigmoid(pm.math.dot(X_occ, delta))
            z = pm.Bernoulli('z', p=psi, shape=nsites, initval=np.ones(nsites, dtype=np.int64))
            mu = lam * z + _MU_FLOOR
        else:
            mu = lam

        if variant.uses_dispersion:
            phi = pm.Gamma('phi', alpha=2.0, beta=0.5)
            N = pm.NegativeBinomial('N', mu=mu, alpha=phi, shape=nsites, initval=max_count + 1)
        else:
            N = pm.Poisson('N', mu=mu, shape=nsites, initval=max_count + 1)

        p = pm.Deterministic('p', pm.math.sigmoid(pm.math.dot(X_det, alpha)))
        pm.Binomial('y', n=N[site_index], p=p, observed=y)

    return model


class PyMCEngine:
    """Fits the N-mixture model with pm.sample (NUTS + Metropolis for N and z)"""

    def __init__(self, cores: int = 1, verbose: bool = True):
        self.cores = cores
        self.verbose = verbose

    def sample(self, variant: ModelVariant, data: dict, constants: dict, fitting: FitConfig,
               random_seed: Optional[int] = None):
        """Run the sampler and return the raw InferenceData (warmup kept)"""
        model = build_nmixture_model(variant, data, constants)
        if self.verbose:
            print("\n" + "=" * 80)
            print(f"STARTING MCMC SAMPLING ({variant.name})")
            print("=" * 80)
            print(f"Start time: {time.strftime('%Y-%m-%d %H:%M:%S')}")
            print(f"Total iterations: {fitting.niter * fitting.nchains} "
                  f"({fitting.warmup} tune + {fitting.draws} draws per chain)")
            sys.stdout.flush()

        start_time = time.time()
        with model:
            idata = pm.sample(
                draws=fitting.draws,
                tune=fitting.warmup,
                chains=fitting.nchains,
                cores=self.cores,
                random_seed=random_seed,
                discard_tuned_samples=False,
                progressbar=False,
                compute_convergence_checks=False,
            )
        elapsed_time = time.time() - start_time

        if self.verbose:
            print(f"✅ Model sampling completed in {elapsed_time / 60:.1f} minutes!")
            if 'sample_stats' in idata.groups() and 'diverging' in idata.sample_stats:
                n_divergences = int(idata.sample_stats['diverging'].values.sum())
                if n_divergences > 0:
                    print(f"⚠️  WARNING: {n_divergences} divergences detected!")
            sys.stdout.flush()
        return idata

    def fit(self, model_description: ModelVariant, data: dict, constants: dict, fitting: FitConfig,
            random_seed: Optional[int] = None) -> List[pd.DataFrame]:
        idata = self.sample(model_description, data, constants, fitting, random_seed=random_seed)
        return idata_to_chains(idata, fitting)


def idata_to_chains(idata, fitting: FitConfig) -> List[pd.DataFrame]:
    """Warmup + posterior draws per chain, thinned, restricted to the monitored variables"""
    chains = posterior_to_chains(idata.posterior, var_names=fitting.monitors, thin=fitting.thin)
    if 'warmup_posterior' not in idata.groups() or fitting.warmup == 0:
        return chains
    warmup = posterior_to_chains(idata.warmup_posterior, var_names=fitting.monitors, thin=fitting.thin)
    return [pd.concat([w, c], ignore_index=True) for w, c in zip(warmup, chains)]
