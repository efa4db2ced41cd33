import numpy as np
import pandas as pd
import pytest

from nmixture_validation.config import SITE_COVARIATES, VISIT_COVARIATES
from nmixture_validation.covariates import (
    build_design_matrix,
    load_site_table,
    load_visit_table,
    make_landscape,
    site_design,
    standardize_covariates,
    validate_tables,
    visit_design,
)
from nmixture_validation.errors import ConfigurationError


@pytest.mark.parametrize("k", range(1, 9))
def test_site_design_shape_and_standardization(sites, k):
    X = site_design(sites, k)
    assert X.shape == (len(sites), k)
    assert np.all(X["intercept"] == 1.0)
    for col in X.columns[1:]:
        assert X[col].mean() == pytest.approx(0.0, abs=1e-10)
        assert X[col].std(ddof=0) == pytest.approx(1.0, abs=1e-10)


@pytest.mark.parametrize("k", range(1, 7))
def test_visit_design_shape(visits, k):
    X = visit_design(visits, k)
    assert X.shape == (len(visits), k)
    assert np.all(X.iloc[:, 0] == 1.0)


def test_canonical_column_order(sites, visits):
    assert list(site_design(sites, 4).columns) == ["intercept", "temperature", "precipitation", "elevation"]
    assert list(visit_design(visits, 6).columns) == ["intercept"] + list(VISIT_COVARIATES)
    # column order of the input table does not matter
    shuffled = sites[list(reversed(sites.columns))]
    pd.testing.assert_frame_equal(site_design(shuffled, 8), site_design(sites, 8))


def test_design_rejects_bad_k(sites, visits):
    with pytest.raises(ConfigurationError):
        site_design(sites, 0)
    with pytest.raises(ConfigurationError):
        site_design(sites, len(SITE_COVARIATES) + 2)
    with pytest.raises(ConfigurationError):
        visit_design(visits, 7)


def test_standardization_uses_full_table(sites):
    full = site_design(sites, 3)
    subset_rows = sites.index[:20]
    standardized_then_subset = full.loc[subset_rows]
    subset_then_standardized = site_design(sites.loc[subset_rows], 3)
    assert not np.allclose(standardized_then_subset.to_numpy(), subset_then_standardized.to_numpy())


def test_constant_covariate_stays_zero():
    table = pd.DataFrame({"a": [1.0, 2.0, 3.0], "b": [5.0, 5.0, 5.0]})
    X = build_design_matrix(table, 3, ["a", "b"])
    assert np.all(X["b"] == 0.0)
    assert standardize_covariates(table, []).shape == (3, 0)


def test_missing_covariate_column(sites):
    with pytest.raises(ConfigurationError):
        site_design(sites.drop(columns=["temperature"]), 2)


def test_landscape_shapes_and_ranges():
    sites, visits = make_landscape(n_sites=30, visits_per_site=4, seed=5)
    assert len(sites) == 30 and len(visits) == 120
    cover = sites[["forest", "grassland", "cropland", "urban"]].sum(axis=1)
    assert np.allclose(cover, 1.0)
    assert visits["moon_illumination"].between(0, 1).all()
    assert visits.groupby("site_id").size().eq(4).all()


def test_landscape_is_reproducible():
    a = make_landscape(10, 3, seed=9)
    b = make_landscape(10, 3, seed=9)
    pd.testing.assert_frame_equal(a[0], b[0])
    pd.testing.assert_frame_equal(a[1], b[1])


def test_load_tables_roundtrip(tmp_path, sites, visits):
    site_path = tmp_path / "sites.csv"
    visit_path = tmp_path / "visits.csv"
    sites.assign(geometry="POINT (0 0)").sample(frac=1.0, random_state=1).to_csv(site_path, index=False)
    visits.to_csv(visit_path, index=False)

    loaded_sites = load_site_table(site_path)
    loaded_visits = load_visit_table(visit_path)
    assert "geometry" not in loaded_sites.columns
    assert loaded_sites["site_id"].is_monotonic_increasing
    assert len(loaded_visits) == len(visits)
    validate_tables(loaded_sites, loaded_visits)


def test_load_site_table_missing_column(tmp_path, sites):
    path = tmp_path / "sites.csv"
    sites.drop(columns=["urban"]).to_csv(path, index=False)
    with pytest.raises(ConfigurationError):
        load_site_table(path)


def test_orphan_visits_are_rejected(sites, visits):
    bad = visits.copy()
    bad.loc[0, "site_id"] = 99999
    with pytest.raises(ConfigurationError):
        validate_tables(sites, bad)
