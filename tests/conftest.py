"""Shared fixtures and the ``--run-slow`` switch."""
from __future__ import annotations

import pytest

from arc_weld_master.fea.material_properties import MaterialModel


def pytest_addoption(parser):
    parser.addoption(
        "--run-slow", action="store_true", default=False,
        help="run full-size scenario tests marked slow",
    )


def pytest_collection_modifyitems(config, items):
    if config.getoption("--run-slow"):
        return
    skip_slow = pytest.mark.skip(reason="needs --run-slow")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


# ---------------------------------------------------------------------------
# Constant-property materials
# ---------------------------------------------------------------------------

def constant_material(**overrides) -> dict:
    """Library-format definition with temperature-independent properties."""
    data = {
        "temperature_c": [0.0, 2000.0],
        "k_w_mk": 40.0,
        "cp_j_kgk": 500.0,
        "rho_kg_m3": 7800.0,
        "E_pa": 200e9,
        "nu": 0.3,
        "yield_pa": 1e12,
        "alpha_1_k": 12e-6,
    }
    data.update(overrides)
    return data


@pytest.fixture
def steel_model() -> MaterialModel:
    """Registry with one elastic constant-property steel, id "steel"."""
    model = MaterialModel()
    model.register("steel", constant_material())
    return model


@pytest.fixture
def material_factory():
    """``material_factory(**overrides)`` -> constant-property definition dict."""
    return constant_material
