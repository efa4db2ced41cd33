import numpy as np
import pytest

from nmixture_validation.config import FitConfig, ModelVariant, ParameterSet
from nmixture_validation.diagnostics import summarize_chains
from nmixture_validation.engines import PyMCEngine, build_nmixture_model
from nmixture_validation.errors import ConfigurationError
from nmixture_validation.simulate import simulate_dataset


def small_dataset(sites, visits, variant):
    params = ParameterSet(
        beta=[0.8, 0.2],
        alpha=[0.3],
        delta=[1.0] if variant.zero_inflated else None,
        phi=2.0 if variant.family == "negbin" else None,
    )
    return simulate_dataset(sites, visits, variant, params, seed=1, nsites=12, nvisits=3)


@pytest.mark.parametrize("family,zero_inflated,expected", [
    ("poisson", False, {"beta", "alpha", "N"}),
    ("poisson", True, {"beta", "alpha", "delta", "z", "N"}),
    ("negbin", False, {"beta", "alpha", "phi", "N"}),
    ("negbin", True, {"beta", "alpha", "delta", "z", "phi", "N"}),
])
def test_model_structure_per_variant(sites, visits, family, zero_inflated, expected):
    variant = ModelVariant(family, zero_inflated=zero_inflated)
    data, constants = small_dataset(sites, visits, variant).model_inputs()
    model = build_nmixture_model(variant, data, constants)
    assert {rv.name for rv in model.free_RVs} == expected
    assert "p" in model.named_vars
    assert [rv.name for rv in model.observed_RVs] == ["y"]


def test_model_starts_at_a_finite_log_probability(sites, visits):
    variant = ModelVariant("negbin", zero_inflated=True)
    data, constants = small_dataset(sites, visits, variant).model_inputs()
    model = build_nmixture_model(variant, data, constants)
    logp = model.point_logps()
    assert all(np.isfinite(v) for v in logp.values())


def test_inconsistent_inputs_are_rejected(sites, visits):
    variant = ModelVariant("poisson", zero_inflated=True)
    data, constants = small_dataset(sites, visits, variant).model_inputs()

    missing = dict(constants)
    del missing["X_occ"]
    with pytest.raises(ConfigurationError):
        build_nmixture_model(variant, data, missing)

    with pytest.raises(ConfigurationError):
        build_nmixture_model(variant, {"y": data["y"][:-1]}, constants)

    bad_index = dict(constants, site_index=constants["site_index"] + 1)
    with pytest.raises(ConfigurationError):
        build_nmixture_model(variant, data, bad_index)


@pytest.mark.slow
def test_pymc_engine_returns_chains_with_warmup(sites, visits):
    variant = ModelVariant("poisson")
    data, constants = small_dataset(sites, visits, variant).model_inputs()
    fitting = FitConfig(nchains=2, niter=160, warmup=100, thin=2)

    chains = PyMCEngine(verbose=False).fit(variant, data, constants, fitting, random_seed=3)

    assert len(chains) == 2
    assert chains[0].shape[0] == fitting.warmup_rows + fitting.draw_rows
    assert {"beta[0]", "beta[1]", "alpha[0]", "N[0]", "N[11]", "p[35]"} <= set(chains[0].columns)
    assert not any(c.startswith(("delta", "phi")) for c in chains[0].columns)

    summary = summarize_chains(chains, warmup=fitting.warmup_rows)
    assert len(summary) == chains[0].shape[1]
    n_cols = [c for c in summary.index if c.startswith("N[")]
    assert (summary.loc[n_cols, "mean"] >= 0).all()
