import json

import pytest

from nmixture_validation.cli import _configs, build_arg_parser, main
from nmixture_validation.config import (
    FitConfig,
    GenerationConfig,
    ModelVariant,
    ParameterSet,
    config_to_dict,
    load_config,
)
from nmixture_validation.errors import ConfigurationError


def test_variant_names():
    assert ModelVariant("poisson").name == "P"
    assert ModelVariant("negbin").name == "NB"
    assert ModelVariant("poisson", zero_inflated=True).name == "ZIP"
    assert ModelVariant("negbin", zero_inflated=True).name == "ZINB"
    assert ModelVariant("negbin", zero_inflated=True).uses_dispersion


def test_parameter_set_as_dict():
    params = ParameterSet(beta=[1, 2], alpha=0.5, delta=[0.1], phi=3)
    assert params.beta == (1.0, 2.0)
    assert params.alpha == (0.5,)
    flat = params.as_dict(ModelVariant("poisson"))
    assert flat == {"beta[0]": 1.0, "beta[1]": 2.0, "alpha[0]": 0.5}
    assert params.as_dict(ModelVariant("negbin", zero_inflated=True))["phi"] == 3.0


def test_empty_coefficient_vector():
    with pytest.raises(ConfigurationError):
        ParameterSet(beta=[], alpha=[0.0]).validate(ModelVariant("poisson"))


def test_fit_config_rows():
    fitting = FitConfig(nchains=3, niter=2001, warmup=1001, thin=2)
    assert fitting.draws == 1000
    assert fitting.warmup_rows == 501
    assert fitting.draw_rows == 500
    assert FitConfig(interval_prob=0.9).quantiles == pytest.approx((0.05, 0.5, 0.95))


@pytest.mark.parametrize("kwargs", [
    {"nchains": 1},
    {"thin": 0},
    {"niter": 1000, "warmup": 1000},
    {"interval_prob": 1.0},
])
def test_fit_config_rejects(kwargs):
    with pytest.raises(ConfigurationError):
        FitConfig(**kwargs)


def test_load_config_roundtrip(tmp_path):
    generation = GenerationConfig(beta=[0.5, -0.3], alpha=[0.2], delta=[0.4], family="negbin",
                                  zero_inflated=True, phi=2.0, nsites=50, nvisits=4, seed=9)
    fitting = FitConfig(nchains=4, niter=3000, warmup=1500)
    path = tmp_path / "study.json"
    path.write_text(json.dumps(config_to_dict(generation, fitting)))

    loaded_generation, loaded_fitting = load_config(path)
    assert loaded_generation.params == generation.params
    assert loaded_generation.variant.name == "ZINB"
    assert loaded_generation.nsites == 50
    assert loaded_fitting.nchains == 4
    assert loaded_fitting.monitors == fitting.monitors


def test_load_config_errors(tmp_path):
    path = tmp_path / "bad.json"
    path.write_text(json.dumps({"fitting": {}}))
    with pytest.raises(ConfigurationError):
        load_config(path)

    path.write_text(json.dumps({"generation": {"beta": [0.1], "alpha": [0.1], "colour": "red"}}))
    with pytest.raises(ConfigurationError):
        load_config(path)


def test_config_without_fitting_section_uses_fit_flags(tmp_path):
    path = tmp_path / "study.json"
    path.write_text(json.dumps({"generation": {"beta": [0.5], "alpha": [0.2], "nsites": 20}}))

    generation, fitting = load_config(path)
    assert generation.nsites == 20
    assert fitting is None

    args = build_arg_parser().parse_args([
        "replicate", "--config", str(path), "--nchains", "4", "--niter", "600", "--warmup", "300",
        "--thin", "3", "--interval", "0.9",
    ])
    generation, fitting = _configs(args)
    assert generation.nsites == 20
    assert (fitting.nchains, fitting.niter, fitting.warmup, fitting.thin) == (4, 600, 300, 3)
    assert fitting.interval_prob == 0.9

    args = build_arg_parser().parse_args(["simulate", "--config", str(path)])
    assert _configs(args)[1] is None


def test_config_fitting_section_wins_over_flags(tmp_path):
    path = tmp_path / "study.json"
    path.write_text(json.dumps({"generation": {"beta": [0.5], "alpha": [0.2]},
                                "fitting": {"nchains": 2, "niter": 500, "warmup": 250}}))
    args = build_arg_parser().parse_args(["replicate", "--config", str(path), "--nchains", "6"])
    _, fitting = _configs(args)
    assert (fitting.nchains, fitting.niter, fitting.warmup) == (2, 500, 250)


def test_parser_defaults():
    args = build_arg_parser().parse_args(["replicate"])
    assert args.replicates == 20
    assert args.nchains == 3
    assert args.family == "poisson"


def test_cli_simulate(tmp_path, capsys):
    code = main([
        "simulate", "--landscape-sites", "80", "--landscape-visits", "8",
        "--nsites", "75", "--nvisits", "8", "--seed", "1",
        "--output-dir", str(tmp_path),
    ])
    out = capsys.readouterr().out
    assert code == 0
    assert "observed_sites: 75" in out
    assert "observed_visits: 600" in out
    assert list(tmp_path.glob("run_*/datasets/seed1/observed_visits.csv"))


def test_cli_reports_configuration_errors(capsys):
    code = main(["simulate", "--landscape-sites", "10", "--nsites", "11"])
    assert code == 2
    assert "InsufficientDataError" in capsys.readouterr().out

    code = main(["simulate", "--family", "negbin"])
    assert code == 2
