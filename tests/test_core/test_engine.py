from __future__ import annotations
import os
import pytest
from arc_weld_master.core.engine import Engine
from arc_weld_master.fea.heat_source import HeatSourceSpec, WeldPath
from arc_weld_master.fea.material_properties import MaterialModel
from arc_weld_master.fea.results import RunStatus


def _source() -> HeatSourceSpec:
    return HeatSourceSpec(
        voltage=25.0, current=200.0, efficiency=0.8,
        a=0.003, b=0.003, c_front=0.006, c_rear=0.010,
        path=WeldPath.straight((0.0, 0.0, 0.0), (0.01, 0.0, 0.0), 0.005),
    )


class TestEngine:
    def test_initialize(self, tmp_path):
        engine = Engine(data_dir=str(tmp_path / "data"))
        engine.initialize()
        assert engine.config is not None
        assert engine.logger is not None
        assert os.path.isdir(tmp_path / "data" / "logs")
        engine.shutdown()

    def test_requires_initialize(self, tmp_path):
        engine = Engine(data_dir=str(tmp_path / "data"))
        with pytest.raises(RuntimeError):
            engine.solver_config()

    def test_solver_config_from_file(self, tmp_path):
        cfg_file = tmp_path / "config.yaml"
        cfg_file.write_text(
            "parallel:\n  workers: 3\n"
            "solver:\n  thermal:\n    dt: 0.2\n  mechanical:\n    stride: 5\n"
        )
        engine = Engine(config_path=str(cfg_file), data_dir=str(tmp_path / "data"))
        engine.initialize()
        config = engine.solver_config()
        assert config.thermal_dt == 0.2
        assert config.mechanical_stride == 5
        assert config.n_workers == 3
        engine.shutdown()

    def test_create_and_get_run(self, tmp_path):
        engine = Engine(data_dir=str(tmp_path / "data"))
        engine.initialize()
        run = engine.create_run(_source(), MaterialModel.from_library(["S355"]), "S355")
        assert run.state is RunStatus.CREATED
        assert engine.get_run(run.run_id) is run
        assert engine.runs == [run.run_id]
        engine.shutdown()

    def test_runs_have_independent_buses(self, tmp_path):
        engine = Engine(data_dir=str(tmp_path / "data"))
        engine.initialize()
        materials = MaterialModel.from_library(["S355"])
        a = engine.create_run(_source(), materials, "S355")
        b = engine.create_run(_source(), materials, "S355")
        assert a.run_id != b.run_id
        assert a.event_bus is not b.event_bus
        engine.shutdown()

    def test_shutdown_clears_runs(self, tmp_path):
        engine = Engine(data_dir=str(tmp_path / "data"))
        engine.initialize()
        engine.create_run(_source(), MaterialModel.from_library(["S355"]), "S355")
        engine.shutdown()
        assert engine.runs == []
