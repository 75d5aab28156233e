"""Tests for the temperature-dependent material registry."""
from __future__ import annotations

import numpy as np
import pytest

from arc_weld_master.fea.errors import InvalidMaterial
from arc_weld_master.fea.material_properties import (
    CONDUCTIVITY,
    HARDENING_MODULUS,
    POISSON_RATIO,
    YIELD_STRESS,
    JMAKKinetics,
    MaterialField,
    MaterialModel,
    PropertyCurve,
    get_material,
    list_materials,
)


class TestLibrary:
    def test_list_materials(self):
        assert list_materials() == ["316L", "S355"]

    def test_aliases(self):
        assert get_material("s355j2")["rho_kg_m3"] == 7850.0
        assert get_material("Stainless")["rho_kg_m3"] == 7960.0
        assert get_material("unobtainium") is None

    def test_get_material_returns_copy(self):
        data = get_material("S355")
        data["rho_kg_m3"] = 1.0
        assert get_material("S355")["rho_kg_m3"] == 7850.0

    def test_from_library_validates_all(self):
        model = MaterialModel.from_library()
        assert set(model.ids) == {"316L", "S355"}
        assert model.get("S355").transformation is not None
        assert model.get("316L").transformation is None

    def test_from_library_unknown(self):
        with pytest.raises(InvalidMaterial):
            MaterialModel.from_library(["unobtainium"])


class TestPropertyLookup:
    def test_interpolation(self):
        model = MaterialModel.from_library(["S355"])
        assert model.property_at("S355", CONDUCTIVITY, 150.0) == pytest.approx(48.75)

    def test_clamped_outside_table(self):
        model = MaterialModel.from_library(["S355"])
        assert model.property_at("S355", YIELD_STRESS, -50.0) == pytest.approx(355e6)
        assert model.property_at("S355", YIELD_STRESS, 3000.0) == pytest.approx(10e6)

    def test_array_lookup_keeps_shape(self):
        model = MaterialModel.from_library(["316L"])
        T = np.full((4, 8), 600.0)
        values = model.property_at("316L", POISSON_RATIO, T)
        assert values.shape == (4, 8)
        assert np.allclose(values, 0.3)

    def test_missing_hardening_is_zero(self, steel_model):
        assert np.all(steel_model.property_at("steel", HARDENING_MODULUS, np.ones(3)) == 0.0)

    def test_unknown_property(self, steel_model):
        with pytest.raises(ValueError):
            steel_model.property_at("steel", "magnetism", 20.0)

    def test_unregistered(self, steel_model):
        with pytest.raises(InvalidMaterial):
            steel_model.property_at("copper", CONDUCTIVITY, 20.0)

    def test_property_curve_constant(self):
        curve = PropertyCurve.constant(5.0)
        assert curve(-100.0) == 5.0
        assert curve(1e4) == 5.0


class TestRegistration:
    def test_missing_required(self, material_factory):
        data = material_factory()
        del data["k_w_mk"]
        with pytest.raises(InvalidMaterial, match="missing"):
            MaterialModel().register("bad", data)

    def test_non_increasing_temperatures(self, material_factory):
        data = material_factory(k_w_mk={"temperature_c": [20, 20, 100], "values": [1, 2, 3]})
        with pytest.raises(InvalidMaterial, match="increasing"):
            MaterialModel().register("bad", data)

    def test_decreasing_temperatures(self, material_factory):
        data = material_factory(cp_j_kgk={"temperature_c": [100, 20], "values": [500, 450]})
        with pytest.raises(InvalidMaterial, match="increasing"):
            MaterialModel().register("bad", data)

    def test_non_monotonic_values_accepted(self):
        # the ferromagnetic cp peak near 750 C rises and falls
        model = MaterialModel.from_library(["S355"])
        cp = model.get("S355").curves["specific_heat"].values
        assert np.any(np.diff(cp) < 0.0) and np.any(np.diff(cp) > 0.0)
        assert model.property_at("S355", "specific_heat", 700.0) == pytest.approx(1000.0)

    def test_length_mismatch(self, material_factory):
        data = material_factory(temperature_c=[20, 100, 200], k_w_mk=[40.0, 38.0])
        with pytest.raises(InvalidMaterial):
            MaterialModel().register("bad", data)

    @pytest.mark.parametrize("key,value", [
        ("nu", 0.5),
        ("nu", -0.1),
        ("E_pa", 0.0),
        ("rho_kg_m3", -7800.0),
        ("alpha_1_k", -1e-6),
        ("yield_pa", float("nan")),
    ])
    def test_out_of_range(self, material_factory, key, value):
        with pytest.raises(InvalidMaterial):
            MaterialModel().register("bad", material_factory(**{key: value}))

    def test_transformation_ms_above_ac3(self, material_factory):
        data = material_factory(transformation={"austenitization_temp_c": 400.0, "ms_c": 450.0})
        with pytest.raises(InvalidMaterial, match="Ms"):
            MaterialModel().register("bad", data)

    def test_malformed_transformation(self, material_factory):
        data = material_factory(transformation={"ms_c": 400.0})
        with pytest.raises(InvalidMaterial, match="transformation"):
            MaterialModel().register("bad", data)

    def test_own_table_per_property(self, material_factory):
        model = MaterialModel()
        model.register("m", material_factory(
            k_w_mk={"temperature_c": [0.0, 1000.0], "values": [50.0, 30.0]},
        ))
        assert model.property_at("m", CONDUCTIVITY, 500.0) == pytest.approx(40.0)


class TestJMAKKinetics:
    def test_zero_outside_window(self):
        kin = JMAKKinetics(n=2.0, b_max=0.02, t_nose=700.0, sigma=60.0,
                           t_upper=840.0, t_lower=600.0)
        assert kin.rate_constant(700.0) == pytest.approx(0.02)
        assert kin.rate_constant(590.0) == 0.0
        assert kin.rate_constant(850.0) == 0.0


class TestMaterialField:
    def _two_materials(self, material_factory) -> MaterialModel:
        model = MaterialModel()
        model.register("soft", material_factory(yield_pa=100e6))
        model.register("hard", material_factory(yield_pa=500e6))
        return model

    def test_uniform_assignment(self, steel_model):
        field = MaterialField(steel_model, np.zeros(5, dtype=np.int64), "steel")
        assert field.uniform
        assert np.allclose(field.evaluate(YIELD_STRESS, np.full((5, 8), 20.0)), 1e12)

    def test_tag_assignment(self, material_factory):
        field = MaterialField(self._two_materials(material_factory), np.array([1, 2, 1]),
                              {1: "soft", 2: "hard"})
        values = field.evaluate(YIELD_STRESS, np.full((3, 4), 20.0))
        assert np.allclose(values[:, 0], [100e6, 500e6, 100e6])
        sub = field.evaluate(YIELD_STRESS, np.full((2, 4), 20.0), slice(1, 3))
        assert np.allclose(sub[:, 0], [500e6, 100e6])

    def test_unassigned_tag(self, material_factory):
        with pytest.raises(InvalidMaterial, match="No material"):
            MaterialField(self._two_materials(material_factory), np.array([1, 3]), {1: "soft"})

    def test_unknown_material(self, steel_model):
        with pytest.raises(InvalidMaterial):
            MaterialField(steel_model, np.zeros(2, dtype=np.int64), "copper")

    def test_per_element(self, material_factory):
        model = MaterialModel()
        model.register("a", material_factory(annealing_temp_c=1300.0))
        model.register("b", material_factory())
        field = MaterialField(model, np.array([0, 1, 0]), {0: "a", 1: "b"})
        values = field.per_element(lambda d: d.annealing_temp)
        assert values[0] == 1300.0 and values[2] == 1300.0
        assert np.isnan(values[1])

    def test_node_groups_lowest_element_wins(self, material_factory):
        model = self._two_materials(material_factory)
        conn = np.array([[0, 1, 2, 3], [1, 2, 3, 4]])
        field = MaterialField(model, np.array([2, 1]), {1: "soft", 2: "hard"})
        groups = field.node_groups(conn, 5)
        assert groups["hard"].tolist() == [0, 1, 2, 3]
        assert groups["soft"].tolist() == [4]


MELTING = {
    "solidus_c": 1400.0,
    "liquidus_c": 1500.0,
    "latent_heat_j_kg": 2.5e5,
    "pool_onset_c": 1600.0,
    "pool_full_c": 1700.0,
    "pool_conductivity_factor": 11.0,
}


class TestMelting:
    @pytest.fixture
    def model(self, material_factory) -> MaterialModel:
        model = MaterialModel()
        model.register("m", material_factory(melting=dict(MELTING)))
        return model

    def test_curve_integral_piecewise(self):
        curve = PropertyCurve(np.array([0.0, 100.0]), np.array([400.0, 600.0]))
        assert curve.integral(0.0) == pytest.approx(0.0)
        assert curve.integral(100.0) == pytest.approx(50000.0)
        assert curve.integral(50.0) == pytest.approx(400.0 * 50.0 + 0.5 * 2.0 * 50.0 ** 2)
        # clamped ends integrate the boundary values
        assert curve.integral(-10.0) == pytest.approx(-4000.0)
        assert curve.integral(110.0) == pytest.approx(56000.0)

    def test_enthalpy_includes_latent_heat(self, model):
        below = model.enthalpy_at("m", 1300.0)
        above = model.enthalpy_at("m", 1600.0)
        assert above - below == pytest.approx(500.0 * 300.0 + 2.5e5)
        half = model.enthalpy_at("m", 1450.0) - model.enthalpy_at("m", 1400.0)
        assert half == pytest.approx(500.0 * 50.0 + 1.25e5)

    def test_enthalpy_without_melting(self, steel_model):
        h = steel_model.enthalpy_at("steel", np.array([20.0, 1620.0]))
        assert h[1] - h[0] == pytest.approx(500.0 * 1600.0)

    def test_apparent_specific_heat(self, model):
        cp = model.apparent_specific_heat_at("m", np.array([1000.0, 1450.0, 1550.0]))
        np.testing.assert_allclose(cp, [500.0, 500.0 + 2500.0, 500.0])

    def test_pool_conductivity_ramp(self, model):
        k = model.property_at("m", CONDUCTIVITY, np.array([1500.0, 1600.0, 1650.0, 1700.0, 2500.0]))
        np.testing.assert_allclose(k, [40.0, 40.0, 240.0, 440.0, 440.0])

    def test_library_steels_melt(self):
        model = MaterialModel.from_library()
        for name in model.ids:
            melt = model.get(name).melting
            assert melt is not None
            assert melt.solidus < melt.liquidus <= melt.pool_onset

    def test_defaults(self, material_factory):
        model = MaterialModel()
        model.register("m", material_factory(melting={"solidus_c": 1400.0, "liquidus_c": 1450.0}))
        melt = model.get("m").melting
        assert melt.latent_heat == 0.0
        assert melt.pool_onset == 1450.0 and melt.pool_full == 1550.0
        assert model.property_at("m", CONDUCTIVITY, 3000.0) == pytest.approx(40.0)

    @pytest.mark.parametrize("overrides,match", [
        ({"liquidus_c": 1300.0}, "liquidus"),
        ({"latent_heat_j_kg": -1.0}, "latent"),
        ({"pool_full_c": 1600.0}, "ramp"),
        ({"pool_conductivity_factor": 0.5}, "factor"),
    ])
    def test_invalid(self, material_factory, overrides, match):
        with pytest.raises(InvalidMaterial, match=match):
            MaterialModel().register("bad", material_factory(melting=dict(MELTING, **overrides)))

    def test_malformed(self, material_factory):
        with pytest.raises(InvalidMaterial, match="melting"):
            MaterialModel().register("bad", material_factory(melting={"solidus_c": 1400.0}))

    def test_field_enthalpy_per_material(self, model, material_factory):
        model.register("plain", material_factory())
        field = MaterialField(model, np.array([0, 1]), {0: "m", 1: "plain"})
        T = np.array([[1300.0, 1600.0], [1300.0, 1600.0]])
        h = field.enthalpy(T)
        assert h[0, 1] - h[0, 0] == pytest.approx(500.0 * 300.0 + 2.5e5)
        assert h[1, 1] - h[1, 0] == pytest.approx(500.0 * 300.0)
