"""Core engine - loads configuration and logging, and creates simulation runs."""
from __future__ import annotations

import os
from typing import Optional, Union

from arc_weld_master.core.config import AppConfig
from arc_weld_master.core.event_bus import EventBus
from arc_weld_master.core.logger import StructuredLogger
from arc_weld_master.fea.config import SolverConfig
from arc_weld_master.fea.heat_source import HeatSourceSpec
from arc_weld_master.fea.material_properties import MaterialModel
from arc_weld_master.fea.workflow import WeldSimulation


class Engine:
    def __init__(self, config_path: Optional[str] = None, data_dir: str = "data"):
        self._config_path = config_path
        self._data_dir = data_dir
        self.config: Optional[AppConfig] = None
        self.logger: Optional[StructuredLogger] = None
        self._runs: dict[str, WeldSimulation] = {}

    def initialize(self) -> None:
        self.config = AppConfig(self._config_path)
        log_dir = os.path.join(self._data_dir, "logs")
        os.makedirs(log_dir, exist_ok=True)
        self.logger = StructuredLogger(log_dir=log_dir, level=self.config.get("logging.level", "INFO"))
        self.logger.app.info("Engine initialized")

    def solver_config(self) -> SolverConfig:
        """Typed solver configuration from the ``solver`` and ``parallel`` sections."""
        self._require_initialized()
        return SolverConfig.from_app_config(self.config)

    def create_run(
        self,
        heat_source: HeatSourceSpec,
        materials: MaterialModel,
        assignment: Union[str, dict],
        config: Optional[SolverConfig] = None,
        keep_events: bool = False,
    ) -> WeldSimulation:
        """New independent run with its own event bus."""
        self._require_initialized()
        run = WeldSimulation(
            heat_source, materials, assignment, config or self.solver_config(),
            event_bus=EventBus(keep_history=keep_events),
            structured_logger=self.logger,
        )
        self._runs[run.run_id] = run
        self.logger.app.info("Created run %s", run.run_id)
        return run

    def get_run(self, run_id: str) -> Optional[WeldSimulation]:
        return self._runs.get(run_id)

    @property
    def runs(self) -> list[str]:
        return list(self._runs)

    def _require_initialized(self) -> None:
        if self.config is None or self.logger is None:
            raise RuntimeError("Engine.initialize() must be called first")

    def shutdown(self) -> None:
        for run in self._runs.values():
            run.cancel()
            run.event_bus.close()
        self._runs.clear()
        if self.logger:
            self.logger.app.info("Engine shutdown")
            self.logger.close()
