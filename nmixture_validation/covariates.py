"""
Covariate tables and design matrices

Site and visit covariates are standardized over the full table (before any
row subsampling) and stacked behind an intercept column in a fixed,
canonical order, so coefficient index i always refers to the same covariate.
"""

from __future__ import annotations

import os
from typing import Sequence

import numpy as np
import pandas as pd
from sklearn.preprocessing import StandardScaler

from .config import SITE_COVARIATES, VISIT_COVARIATES, SITE_ID, VISIT_ID
from .errors import ConfigurationError

INTERCEPT = 'intercept'


def _require_columns(table: pd.DataFrame, columns, what: str):
    missing = [c for c in columns if c not in table.columns]
    if missing:
        raise ConfigurationError(f"{what} table is missing columns: {missing}")


def standardize_covariates(table: pd.DataFrame, covariates: Sequence[str]) -> pd.DataFrame:
    """Zero-mean, unit-variance copy of the selected covariate columns"""
    covariates = list(covariates)
    _require_columns(table, covariates, 'Covariate')
    if not covariates:
        return pd.DataFrame(index=table.index)
    scaler = StandardScaler()
    scaled = scaler.fit_transform(table[covariates].to_numpy(dtype=float))
    return pd.DataFrame(scaled, index=table.index, columns=covariates)


def build_design_matrix(table: pd.DataFrame, k: int, covariates: Sequence[str]) -> pd.DataFrame:
    """Design matrix with an intercept and the first k-1 covariates of ``covariates``.

    ``covariates`` is the canonical ordering for the linear predictor
    (SITE_COVARIATES or VISIT_COVARIATES). Rows align with ``table``.
    """
    covariates = list(covariates)
    if k < 1:
        raise ConfigurationError(f"Design matrix needs at least the intercept column, got k={k}")
    if k > len(covariates) + 1:
        raise ConfigurationError(
            f"Requested {k} design columns but only {len(covariates)} covariates (+ intercept) are available"
        )
    selected = covariates[:k - 1]
    X = standardize_covariates(table, selected)
    X.insert(0, INTERCEPT, 1.0)
    return X


def site_design(sites: pd.DataFrame, k: int) -> pd.DataFrame:
    """Occupancy / abundance design matrix over the site table"""
    return build_design_matrix(sites, k, SITE_COVARIATES)


def visit_design(visits: pd.DataFrame, k: int) -> pd.DataFrame:
    """Detection design matrix over the visit table"""
    return build_design_matrix(visits, k, VISIT_COVARIATES)


# =============================================================================
# Loading
# =============================================================================

def load_site_table(path) -> pd.DataFrame:
    """Load a site covariate CSV (site_id + site covariates; geometry is dropped)"""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Site table not found: {path}")
    sites = pd.read_csv(path)
    _require_columns(sites, (SITE_ID,) + SITE_COVARIATES, 'Site')
    if sites[SITE_ID].duplicated().any():
        raise ConfigurationError("Site table has duplicated site_id values")
    sites = sites.drop(columns=['geometry'], errors='ignore')
    return sites.sort_values(SITE_ID).reset_index(drop=True)


def load_visit_table(path) -> pd.DataFrame:
    """Load a visit covariate CSV (visit_id, site_id + visit covariates)"""
    if not os.path.exists(path):
        raise FileNotFoundError(f"Visit table not found: {path}")
    visits = pd.read_csv(path)
    _require_columns(visits, (VISIT_ID, SITE_ID) + VISIT_COVARIATES, 'Visit')
    if visits[VISIT_ID].duplicated().any():
        raise ConfigurationError("Visit table has duplicated visit_id values")
    return visits.sort_values([SITE_ID, VISIT_ID]).reset_index(drop=True)


def validate_tables(sites: pd.DataFrame, visits: pd.DataFrame):
    """Check that every visit belongs to a known site"""
    _require_columns(sites, (SITE_ID,), 'Site')
    _require_columns(visits, (VISIT_ID, SITE_ID), 'Visit')
    orphans = ~visits[SITE_ID].isin(sites[SITE_ID])
    if orphans.any():
        bad = sorted(visits.loc[orphans, SITE_ID].unique().tolist())[:10]
        raise ConfigurationError(f"Visits reference unknown site_id values: {bad}")


# =============================================================================
# Synthetic landscape
# =============================================================================

def make_landscape(n_sites: int = 200, visits_per_site: int = 12, seed: int = 0):
    """Synthetic site and visit covariate tables.

    Site covariates loosely mimic a mountain region: temperature falls with
    elevation, precipitation rises with it, and the four land-cover
    fractions sum to one. Visits carry their own weather and lunar
    illumination around the site means.
    """
    if n_sites < 1 or visits_per_site < 1:
        raise ConfigurationError("Landscape needs at least one site and one visit per site")
    rng = np.random.default_rng(seed)

    elevation = rng.gamma(shape=4.0, scale=250.0, size=n_sites)
    temperature = 22.0 - 0.0065 * elevation + rng.normal(0, 1.5, n_sites)
    precipitation = 600.0 + 0.4 * elevation + rng.normal(0, 80.0, n_sites)
    cover = rng.dirichlet([2.0, 1.5, 1.0, 0.5], size=n_sites)

    sites = pd.DataFrame({
        SITE_ID: np.arange(1, n_sites + 1),
        'temperature': temperature,
        'precipitation': precipitation,
        'elevation': elevation,
        'forest': cover[:, 0],
        'grassland': cover[:, 1],
        'cropland': cover[:, 2],
        'urban': cover[:, 3],
    })

    n_visits = n_sites * visits_per_site
    site_of_visit = np.repeat(sites[SITE_ID].to_numpy(), visits_per_site)
    site_temp = np.repeat(temperature, visits_per_site)
    lunar_phase = rng.uniform(0, 2 * np.pi, n_visits)

    visits = pd.DataFrame({
        VISIT_ID: np.arange(1, n_visits + 1),
        SITE_ID: site_of_visit,
        'visit_temperature': site_temp + rng.normal(0, 3.0, n_visits),
        'visit_precipitation': rng.exponential(2.0, n_visits),
        'wind': rng.gamma(shape=2.0, scale=2.5, size=n_visits),
        'cloud_cover': rng.uniform(0, 100, n_visits),
        'moon_illumination': (1 - np.cos(lunar_phase)) / 2,
    })
    return sites, visits
