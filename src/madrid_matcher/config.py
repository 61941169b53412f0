from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigError

DEFAULT_GAZETTEER_COLUMNS = {
    "id": "id",
    "via_id": "via_id",
    "via_code": "codigo_via",
    "street_class": "clase_via",
    "street_name": "nombre_via",
    "street_name_accents": "nombre_via_acentos",
    "number": "numero",
    "postal_code": "codigo_postal",
    "district": "distrito",
    "district_name": "distrito_nombre",
    "neighborhood": "barrio",
    "latitude": "latitud",
    "longitude": "longitud",
}

DEFAULT_RECORD_COLUMNS = {
    "id": "id",
    "street_type": "tipo_via",
    "street_name": "nombre_via",
    "street_number": "numero_via",
    "postal_code": "codigo_postal",
    "district": "distrito",
    "latitude": "latitud",
    "longitude": "longitud",
}


class ColumnMapping(BaseModel):
    gazetteer: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_GAZETTEER_COLUMNS))
    records: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_RECORD_COLUMNS))


class SearchConfig(BaseModel):
    fuzzy_threshold: float = 0.6
    max_results: int = 10
    geographic_radius_meters: float = 1000.0
    coordinate_tolerance_meters: float = 100.0
    enable_fuzzy_search: bool = True
    enable_geographic_search: bool = True
    prioritize_exact_matches: bool = True

    @field_validator("fuzzy_threshold")
    @classmethod
    def check_threshold(cls, value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise ValueError("fuzzy_threshold debe estar entre 0 y 1")
        return value

    @field_validator("geographic_radius_meters", "coordinate_tolerance_meters")
    @classmethod
    def check_positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("las distancias deben ser positivas")
        return value


class WorkflowConfig(BaseModel):
    auto_skip_distance_meters: float = 50.0


class PreprocessConfig(BaseModel):
    batch_size: int = 25
    incremental_batch_size: int = 10
    max_retries: int = 3
    timeout_seconds: float = 30.0
    batch_pause_seconds: float = 2.0
    incremental_pause_seconds: float = 1.0
    retry_backoff_seconds: float = 1.0
    recent_window_hours: int = 4


class RuntimeConfig(BaseModel):
    log_level: str = "INFO"


class AppConfig(BaseModel):
    gazetteer_file: Optional[Path] = None
    gazetteer_sheet: Optional[str] = None
    records_file: Optional[Path] = None
    records_sheet: Optional[str] = None
    output_file: Path = Path("output/address_validations.xlsx")

    columns: ColumnMapping = Field(default_factory=ColumnMapping)
    search: SearchConfig = Field(default_factory=SearchConfig)
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    preprocess: PreprocessConfig = Field(default_factory=PreprocessConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @field_validator("output_file", mode="before")
    @classmethod
    def ensure_output_parent(cls, value: Path | str) -> Path:
        path = Path(value)
        if not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
        return path


def load_config(path: str | Path) -> AppConfig:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"El fichero de configuración no existe: {path}")
    with open(path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
    try:
        return AppConfig(**data)
    except ValidationError as exc:
        raise ConfigError(f"Configuración no válida en {path}: {exc}") from exc
