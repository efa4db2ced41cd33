import pytest

from nmixture_validation.covariates import make_landscape


@pytest.fixture(scope="session")
def landscape():
    """120 sites with 10 visits each"""
    return make_landscape(n_sites=120, visits_per_site=10, seed=0)


@pytest.fixture
def sites(landscape):
    return landscape[0].copy()


@pytest.fixture
def visits(landscape):
    return landscape[1].copy()
