"""
Hierarchical generative simulator for N-mixture survey data

Draws latent occupancy (zero-inflated variants), latent abundance per site
and binomial counts per visit, then subsamples sites and visits the way a
monitoring design would. Every draw comes from one seed-scoped generator,
so identical seeds give identical datasets and replicates never share
random state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import numpy as np
import pandas as pd
from scipy.special import expit

from .config import ModelVariant, ParameterSet, POISSON, NEGBIN, SITE_ID, VISIT_ID
from .covariates import site_design, visit_design, validate_tables
from .errors import ConfigurationError, InsufficientDataError


def _draw_poisson(rng, mean, phi):
    return rng.poisson(mean)


def _draw_negbin(rng, mean, phi):
    # NB(mean, phi): var = mean + mean^2 / phi. mean == 0 gives p == 1 and a hard zero.
    return rng.negative_binomial(phi, phi / (phi + mean))


_ABUNDANCE_DRAWS = {
    POISSON: _draw_poisson,
    NEGBIN: _draw_negbin,
}


@dataclass(frozen=True)
class _VariantPlan:
    """What a structural variant needs, resolved once per simulation"""
    occupancy_layer: bool
    draw_abundance: Callable


def _plan_for(variant: ModelVariant) -> _VariantPlan:
    return _VariantPlan(
        occupancy_layer=variant.uses_occupancy,
        draw_abundance=_ABUNDANCE_DRAWS[variant.family],
    )


@dataclass(frozen=True)
class SimulatedDataset:
    """Full synthetic population plus the observed subsample.

    The design matrices are restricted to the observed rows: ``X_occ`` and
    ``X_abund`` align with ``observed_sites``, ``X_det`` with
    ``observed_visits``. ``site_index`` maps each observed visit to the
    0-based row of its site in ``observed_sites``.
    """
    variant: ModelVariant
    params: ParameterSet
    seed: int
    sites: pd.DataFrame
    visits: pd.DataFrame
    observed_sites: pd.DataFrame
    observed_visits: pd.DataFrame
    X_abund: pd.DataFrame
    X_det: pd.DataFrame
    X_occ: Optional[pd.DataFrame]
    site_index: np.ndarray

    @property
    def nsites(self) -> int:
        return len(self.observed_sites)

    @property
    def nvisits(self) -> int:
        return len(self.observed_visits)

    def truth(self) -> pd.Series:
        """True value of every parameter a fitted model can report"""
        values = self.params.as_dict(self.variant)
        for i, n in enumerate(self.observed_sites['N'].to_numpy()):
            values[f"N[{i}]"] = float(n)
        if self.variant.uses_occupancy:
            for i, z in enumerate(self.observed_sites['Z'].to_numpy()):
                values[f"z[{i}]"] = float(z)
        for j, p in enumerate(self.observed_visits['p'].to_numpy()):
            values[f"p[{j}]"] = float(p)
        return pd.Series(values, name='truth', dtype=float)

    def model_inputs(self):
        """(data, constants) for a fitting engine"""
        data = {'y': self.observed_visits['y'].to_numpy(dtype=np.int64)}
        constants = {
            'X_abund': self.X_abund.to_numpy(dtype=float),
            'X_det': self.X_det.to_numpy(dtype=float),
            'nsites': self.nsites,
            'nvisits': self.nvisits,
            'site_index': self.site_index.copy(),
        }
        if self.X_occ is not None:
            constants['X_occ'] = self.X_occ.to_numpy(dtype=float)
        return data, constants

    def describe(self) -> dict:
        """Headline numbers for the population and the observed subsample"""
        obs_y = self.observed_visits['y']
        max_y = self.observed_visits.groupby(SITE_ID)['y'].max()
        info = {
            'variant': self.variant.name,
            'seed': self.seed,
            'population_sites': len(self.sites),
            'population_visits': len(self.visits),
            'population_total_N': int(self.sites['N'].sum()),
            'observed_sites': self.nsites,
            'observed_visits': self.nvisits,
            'observed_total_N': int(self.observed_sites['N'].sum()),
            'mean_count': float(obs_y.mean()) if len(obs_y) else float('nan'),
            'naive_occupancy': float((max_y > 0).mean()) if len(max_y) else float('nan'),
            'mean_detection': float(self.observed_visits['p'].mean()) if len(obs_y) else float('nan'),
        }
        if self.variant.uses_occupancy:
            info['true_occupancy'] = float(self.observed_sites['Z'].mean())
        return info


def _check_request(name, value):
    if value is not None and int(value) < 1:
        raise ConfigurationError(f"{name} must be a positive integer, got {value}")


def simulate_dataset(sites: pd.DataFrame, visits: pd.DataFrame, variant: ModelVariant,
                     params: ParameterSet, seed: int, nsites: Optional[int] = None,
                     nvisits: Optional[int] = None) -> SimulatedDataset:
    """Simulate a full population and draw the observed subsample.

    ``nsites``/``nvisits`` default to every site and every visit per site.
    """
    params.validate(variant)
    _check_request('nsites', nsites)
    _check_request('nvisits', nvisits)
    validate_tables(sites, visits)
    plan = _plan_for(variant)
    rng = np.random.default_rng(seed)

    sites = sites.drop(columns=['geometry'], errors='ignore')
    sites = sites.sort_values(SITE_ID).reset_index(drop=True)
    visits = visits.sort_values([SITE_ID, VISIT_ID]).reset_index(drop=True)
    population_sites = sites.copy()

    # 1. occupancy
    X_occ_full = None
    if plan.occupancy_layer:
        X_occ_full = site_design(sites, len(params.delta))
        psi = expit(X_occ_full.to_numpy() @ np.asarray(params.delta))
        Z = rng.binomial(1, psi)
        population_sites['psi'] = psi
        population_sites['Z'] = Z

    # 2. abundance
    X_abund_full = site_design(sites, len(params.beta))
    lam = np.exp(X_abund_full.to_numpy() @ np.asarray(params.beta))
    mean = lam * population_sites['Z'].to_numpy() if plan.occupancy_layer else lam
    N = plan.draw_abundance(rng, mean, params.phi)
    population_sites['lambda'] = lam
    population_sites['N'] = N.astype(np.int64)

    # 3. detection
    population_visits = visits.merge(
        population_sites[[SITE_ID, 'N']], on=SITE_ID, how='left', validate='many_to_one'
    )
    X_det_full = visit_design(visits, len(params.alpha))
    p = expit(X_det_full.to_numpy() @ np.asarray(params.alpha))
    y = rng.binomial(population_visits['N'].to_numpy(), p)
    population_visits['p'] = p
    population_visits['y'] = y.astype(np.int64)

    # 4. subsample sites, then visits within each kept site
    site_ids = population_sites[SITE_ID].to_numpy()
    n_keep = len(site_ids) if nsites is None else int(nsites)
    if n_keep > len(site_ids):
        raise InsufficientDataError(
            f"Requested {n_keep} sites but only {len(site_ids)} are available"
        )
    kept = np.sort(rng.choice(site_ids, size=n_keep, replace=False))

    rows_by_site = population_visits.groupby(SITE_ID).indices
    empty = np.array([], dtype=np.int64)
    visit_rows = []
    for sid in kept:
        rows = rows_by_site.get(sid, empty)
        want = len(rows) if nvisits is None else int(nvisits)
        if want > len(rows):
            raise InsufficientDataError(
                f"Requested {want} visits at site {sid} but only {len(rows)} are available"
            )
        visit_rows.append(rng.choice(rows, size=want, replace=False))

    site_rows = np.flatnonzero(population_sites[SITE_ID].isin(kept).to_numpy())
    visit_rows = np.sort(np.concatenate(visit_rows)) if visit_rows else empty

    observed_sites = population_sites.iloc[site_rows].reset_index(drop=True)
    observed_visits = population_visits.iloc[visit_rows].reset_index(drop=True)
    site_index = pd.Index(observed_sites[SITE_ID]).get_indexer(observed_visits[SITE_ID])

    def restrict(X, rows):
        return None if X is None else X.iloc[rows].reset_index(drop=True)

    return SimulatedDataset(
        variant=variant,
        params=params,
        seed=seed,
        sites=population_sites,
        visits=population_visits,
        observed_sites=observed_sites,
        observed_visits=observed_visits,
        X_abund=restrict(X_abund_full, site_rows),
        X_det=restrict(X_det_full, visit_rows),
        X_occ=restrict(X_occ_full, site_rows),
        site_index=site_index.astype(np.int64),
    )


def simulate_from_config(sites, visits, generation) -> SimulatedDataset:
    """simulate_dataset driven by a GenerationConfig"""
    return simulate_dataset(
        sites, visits,
        variant=generation.variant,
        params=generation.params,
        seed=generation.seed,
        nsites=generation.nsites,
        nvisits=generation.nvisits,
    )
