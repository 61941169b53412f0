from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .checks import run_checks, validate_gazetteer, validate_paths
from .config import AppConfig, load_config
from .exceptions import ConfigError
from .models import Coordinates
from .preprocessor import AddressValidationPreprocessor
from .storage import InMemoryRecordStore, load_records
from .tables import write_table
from .validation import AddressValidationService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="madrid-matcher",
        description="Validación de direcciones del registro DEA contra el callejero oficial de Madrid",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Valida una dirección y muestra el resultado en JSON")
    validate.add_argument("config", type=Path, help="Ruta del fichero de configuración")
    validate.add_argument("--type", dest="street_type", default=None, help="Tipo de vía (Calle, Avenida...)")
    validate.add_argument("--name", dest="street_name", required=True, help="Nombre de la vía")
    validate.add_argument("--number", dest="street_number", default=None, help="Número del portal")
    validate.add_argument("--postal-code", default=None, help="Código postal")
    validate.add_argument("--district", default=None, help='Distrito ("2", "2. Arganzuela"...)')
    validate.add_argument("--lat", type=float, default=None, help="Latitud")
    validate.add_argument("--lon", type=float, default=None, help="Longitud")

    preprocess = sub.add_parser("preprocess", help="Precalcula la validación de todos los registros")
    preprocess.add_argument("config", type=Path, help="Ruta del fichero de configuración")
    preprocess.add_argument(
        "--recent",
        action="store_true",
        help="Procesa solo los registros recientes o pendientes de reproceso",
    )

    check = sub.add_parser("check", help="Comprueba la configuración y que el callejero se puede cargar")
    check.add_argument("config", type=Path, help="Ruta del fichero de configuración")
    return parser


def _setup_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def _coordinates(lat: Optional[float], lon: Optional[float]) -> Optional[Coordinates]:
    if lat is None or lon is None:
        return None
    return Coordinates(latitude=lat, longitude=lon)


def run_validate(cfg: AppConfig, args: argparse.Namespace) -> None:
    validate_paths(cfg)
    gazetteer = validate_gazetteer(cfg)
    service = AddressValidationService(gazetteer, cfg.search)
    result = asyncio.run(
        service.validate_address(
            args.street_type,
            args.street_name,
            args.street_number,
            args.postal_code,
            args.district,
            _coordinates(args.lat, args.lon),
        )
    )
    print(result.model_dump_json(indent=2))


def run_preprocess(cfg: AppConfig, recent: bool = False) -> None:
    validate_paths(cfg, require_records=True)
    gazetteer = validate_gazetteer(cfg)
    records = load_records(cfg.records_file, cfg.records_sheet, cfg.columns.records)
    store = InMemoryRecordStore(records)
    preprocessor = AddressValidationPreprocessor(AddressValidationService(gazetteer, cfg.search), store, cfg.preprocess)

    logger.info("Iniciando validación de {} registros", len(records))
    stats = asyncio.run(preprocessor.process_recent() if recent else preprocessor.process_all_pending())
    rows = asyncio.run(export_rows(store))
    write_table(rows, cfg.output_file)
    print(json.dumps(stats.to_dict(), ensure_ascii=False, indent=2))
    logger.info("Preprocesado terminado: {} correctos, {} fallidos", stats.successful, stats.failed)


async def export_rows(store: InMemoryRecordStore) -> list[dict]:
    rows = []
    for record in store.records.values():
        validation = await store.get_validation(record.id)
        row = {
            "id": record.id,
            "tipo_via": record.street_type,
            "nombre_via": record.street_name,
            "numero_via": record.street_number,
            "codigo_postal": record.postal_code,
            "distrito": record.district,
            "estado": None,
            "confianza": None,
            "tipo_coincidencia": None,
            "via_oficial": None,
            "numero_oficial": None,
            "codigo_postal_oficial": None,
            "distrito_oficial": None,
            "acciones": None,
            "estrategias": None,
            "error": None,
        }
        if validation is not None:
            row["estado"] = validation.overall_status
            row["acciones"] = "; ".join(validation.recommended_actions)
            row["estrategias"] = ",".join(validation.strategies_used)
            row["error"] = validation.error_message
            if validation.suggestions:
                best = validation.suggestions[0]
                row["confianza"] = round(best.confidence, 3)
                row["tipo_coincidencia"] = best.match_type
                row["via_oficial"] = f"{best.record.street_class} {best.record.street_name_accents}".strip()
                row["numero_oficial"] = best.record.number
                row["codigo_postal_oficial"] = best.record.postal_code
                row["distrito_oficial"] = best.record.district
        rows.append(row)
    return rows


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        if args.command == "check":
            _setup_logging("INFO")
            run_checks(args.config)
            return
        cfg = load_config(args.config)
        _setup_logging(cfg.runtime.log_level)
        if args.command == "validate":
            run_validate(cfg, args)
        elif args.command == "preprocess":
            run_preprocess(cfg, recent=args.recent)
    except ConfigError as exc:
        logger.error(str(exc))
        raise SystemExit(1)


if __name__ == "__main__":
    main()
