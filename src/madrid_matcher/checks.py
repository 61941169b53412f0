from __future__ import annotations

from pathlib import Path

from loguru import logger

from .config import AppConfig, load_config
from .exceptions import ConfigError
from .gazetteer import InMemoryGazetteer, load_gazetteer


def validate_paths(config: AppConfig, require_records: bool = False) -> None:
    if config.gazetteer_file is None:
        raise ConfigError("No se ha configurado gazetteer_file")
    if not config.gazetteer_file.exists():
        raise ConfigError(f"El callejero no existe: {config.gazetteer_file}")
    if config.records_file is not None and not config.records_file.exists():
        raise ConfigError(f"El fichero de registros no existe: {config.records_file}")
    if require_records and config.records_file is None:
        raise ConfigError("No se ha configurado records_file")
    logger.info("Rutas comprobadas: callejero={}, registros={}", config.gazetteer_file, config.records_file)


def validate_gazetteer(config: AppConfig) -> InMemoryGazetteer:
    gazetteer = load_gazetteer(
        config.gazetteer_file, config.gazetteer_sheet, config.columns.gazetteer, config.search
    )
    if not gazetteer.records:
        raise ConfigError(f"El callejero {config.gazetteer_file} no contiene direcciones con coordenadas")
    return gazetteer


def run_checks(config_path: Path) -> None:
    cfg = load_config(config_path)
    validate_paths(cfg)
    validate_gazetteer(cfg)
    logger.info("Configuración y callejero comprobados, todo correcto")
