"""Pydantic models for configuration validation."""
from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from flowdata.exceptions import ConfigurationError


class ScatterConfig(BaseModel):
    channels: list[str] = ['FSC_A', 'FSC_H', 'FSC_W', 'SSC_A', 'SSC_H', 'SSC_W']


class ImportConfig(BaseModel):
    rename: dict[str, str] = {}
    normalize_names: bool = True


class GatingConfig(BaseModel):
    strategy: str = 'density'
    gate_names: list[str] = ['P1', 'P2', 'P3']
    # scatter channel pair each gate is drawn on, one per gate name
    stages: list[tuple[str, str]] = [('FSC_A', 'SSC_A'), ('FSC_A', 'FSC_H'), ('SSC_A', 'SSC_H')]
    subsample_stride: int | None = Field(None, ge=1)
    density_percentile: float = Field(90.0, gt=0, le=100)
    max_kde_events: int = Field(50_000, ge=100)
    all_gate: str = 'all'

    @model_validator(mode="after")
    def _one_stage_per_gate(self) -> GatingConfig:
        if len(self.stages) != len(self.gate_names):
            raise ValueError(
                f"gating.stages has {len(self.stages)} entries but gating.gate_names has {len(self.gate_names)}"
            )
        return self

    @property
    def terminal_gate(self) -> str:
        return self.gate_names[-1]


class CalibrationConfig(BaseModel):
    method: str = 'bead_regression'
    source_data_type: str = 'raw'
    data_type: str = 'mef'
    nonneg_gate: str = 'nneg'
    # bead type -> lot -> channel -> reference MEF peak values
    bead_mef_values: dict[str, dict[str, dict[str, list[float]]]] = {}


class CompensationConfig(BaseModel):
    piecewise_method: str = 'piecewise'
    matrix_method: str = 'matrix'
    single_color_data_type: str = 'scComp'
    autofluorescence_data_type: str = 'afs'
    matrix_data_type: str = 'mComp'
    gate: str | None = None
    n_bins: int = Field(20, ge=2)


class TransformParameters(BaseModel):
    T: int = 262144
    W: float = 0.5
    M: float = 4.5
    A: float = 0


class TransformsConfig(BaseModel):
    method: str = 'logicle'
    parameters: TransformParameters = Field(default_factory=TransformParameters)


class LoggingConfig(BaseModel):
    level: str = 'INFO'
    directory: Path | None = None


class AppConfig(BaseModel):
    scatter: ScatterConfig = Field(default_factory=ScatterConfig)
    importing: ImportConfig = Field(default_factory=ImportConfig)
    gating: GatingConfig = Field(default_factory=GatingConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    compensation: CompensationConfig = Field(default_factory=CompensationConfig)
    transforms: TransformsConfig = Field(default_factory=TransformsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_and_validate_config(config_path: Path) -> AppConfig:
    """Loads and validates the YAML configuration file."""
    try:
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
        return AppConfig.model_validate(config_data)
    except FileNotFoundError:
        raise
    except (yaml.YAMLError, ValidationError) as e:
        raise ConfigurationError(f"Error parsing or validating config file {config_path}:\n{e}") from e
