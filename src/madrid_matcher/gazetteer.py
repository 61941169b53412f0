from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

import pandas as pd
from loguru import logger

from .config import DEFAULT_GAZETTEER_COLUMNS, SearchConfig
from .exceptions import ConfigError
from .models import AddressQuery, GazetteerRecord, ScoredCandidate, parse_house_number
from .normalizer import canonical_street_type, normalize, normalize_street_name
from .similarity import edit_ratio, haversine_meters
from .tables import clean_value, read_table

NUMBER_MATCH_BONUS = 0.2


class AddressRepository(ABC):
    """Consultas de solo lectura sobre el callejero oficial."""

    @abstractmethod
    async def search_exact(self, query: AddressQuery) -> list[ScoredCandidate]:
        ...

    @abstractmethod
    async def search_fuzzy(self, query: AddressQuery, threshold: Optional[float] = None) -> list[ScoredCandidate]:
        ...

    @abstractmethod
    async def search_geo(
        self, latitude: float, longitude: float, radius_meters: Optional[float] = None
    ) -> list[ScoredCandidate]:
        ...

    @abstractmethod
    async def find_by_via_and_number(self, via_id: int, number: Optional[int] = None) -> list[ScoredCandidate]:
        ...

    @abstractmethod
    async def number_in_range(self, via_id: int, district: int, number: int) -> bool:
        ...


@dataclass
class NumberRange:
    odd_min: Optional[int] = None
    odd_max: Optional[int] = None
    even_min: Optional[int] = None
    even_max: Optional[int] = None

    def add(self, number: int) -> None:
        if number % 2:
            self.odd_min = number if self.odd_min is None else min(self.odd_min, number)
            self.odd_max = number if self.odd_max is None else max(self.odd_max, number)
        else:
            self.even_min = number if self.even_min is None else min(self.even_min, number)
            self.even_max = number if self.even_max is None else max(self.even_max, number)

    def contains(self, number: int) -> bool:
        low, high = (self.odd_min, self.odd_max) if number % 2 else (self.even_min, self.even_max)
        if low is None or high is None:
            return False
        return low <= number <= high


@dataclass
class _Street:
    via_id: int
    plain: str
    stripped: str
    street_type: str


def _number_distance(number: Optional[int], requested: Optional[int]) -> float:
    if requested is None:
        return 0.0
    if number is None:
        return math.inf
    return float(abs(number - requested))


def _number_key(number: Optional[int]) -> float:
    return math.inf if number is None else float(number)


class InMemoryGazetteer(AddressRepository):
    def __init__(self, records: Iterable[GazetteerRecord], config: Optional[SearchConfig] = None) -> None:
        self.config = config or SearchConfig()
        self.records: list[GazetteerRecord] = list(records)
        self.by_via: dict[int, list[GazetteerRecord]] = defaultdict(list)
        self.streets: dict[int, _Street] = {}
        self.ranges: dict[tuple[int, int], NumberRange] = defaultdict(NumberRange)
        for record in self.records:
            self.by_via[record.via_id].append(record)
            if record.via_id not in self.streets:
                self.streets[record.via_id] = _Street(
                    via_id=record.via_id,
                    plain=normalize(record.street_name_accents or record.street_name),
                    stripped=normalize_street_name(record.street_name_accents or record.street_name),
                    street_type=canonical_street_type(record.street_class),
                )
            if record.number is not None:
                self.ranges[(record.via_id, record.district)].add(record.number)
        logger.info("Callejero cargado: {} direcciones, {} vías", len(self.records), len(self.streets))

    async def search_exact(self, query: AddressQuery) -> list[ScoredCandidate]:
        try:
            return self._exact(query)
        except Exception:
            logger.exception("Error en búsqueda exacta para {!r}", query.street_name)
            return []

    async def search_fuzzy(self, query: AddressQuery, threshold: Optional[float] = None) -> list[ScoredCandidate]:
        if not query.street_name or not self.config.enable_fuzzy_search:
            return []
        try:
            return self._fuzzy(query, self.config.fuzzy_threshold if threshold is None else threshold)
        except Exception:
            logger.exception("Error en búsqueda fuzzy para {!r}", query.street_name)
            return []

    async def search_geo(
        self, latitude: float, longitude: float, radius_meters: Optional[float] = None
    ) -> list[ScoredCandidate]:
        if not self.config.enable_geographic_search:
            return []
        radius = self.config.geographic_radius_meters if radius_meters is None else radius_meters
        try:
            return self._geo(latitude, longitude, radius)
        except Exception:
            logger.exception("Error en búsqueda geográfica ({}, {})", latitude, longitude)
            return []

    async def find_by_via_and_number(self, via_id: int, number: Optional[int] = None) -> list[ScoredCandidate]:
        try:
            matches = [r for r in self.by_via.get(via_id, []) if number is None or r.number == number]
            matches.sort(key=lambda r: _number_key(r.number))
            return [
                ScoredCandidate(record=r, confidence=1.0, match_type="exact")
                for r in matches[: self.config.max_results]
            ]
        except Exception:
            logger.exception("Error buscando vía {} número {}", via_id, number)
            return []

    async def number_in_range(self, via_id: int, district: int, number: int) -> bool:
        known = self.ranges.get((via_id, district))
        if known is None:
            return True
        return known.contains(number)

    def _exact(self, query: AddressQuery) -> list[ScoredCandidate]:
        plain = normalize(query.street_name)
        stripped = normalize_street_name(query.street_name)
        if not plain:
            return []
        street_type = canonical_street_type(query.street_type) if query.street_type else None
        number = query.requested_number()
        district = query.district_number()

        matches: list[GazetteerRecord] = []
        for street in self.streets.values():
            if street.plain != plain and street.stripped != stripped:
                continue
            if street_type and street.street_type != street_type:
                continue
            for record in self.by_via[street.via_id]:
                if number is not None and record.number != number:
                    continue
                if query.postal_code and record.postal_code != query.postal_code:
                    continue
                if district and record.district != district:
                    continue
                matches.append(record)

        matches.sort(key=lambda r: _number_key(r.number))
        return [
            ScoredCandidate(record=r, confidence=1.0, match_type="exact")
            for r in matches[: self.config.max_results]
        ]

    def _fuzzy(self, query: AddressQuery, threshold: float) -> list[ScoredCandidate]:
        plain = normalize(query.street_name)
        stripped = normalize_street_name(query.street_name)
        requested = query.requested_number()

        scored: list[tuple[float, GazetteerRecord]] = []
        for street in self.streets.values():
            similarity = max(edit_ratio(plain, street.plain), edit_ratio(stripped, street.stripped))
            if similarity < threshold:
                continue
            for record in self.by_via[street.via_id]:
                score = similarity
                if requested is not None and record.number == requested:
                    score += NUMBER_MATCH_BONUS
                scored.append((min(1.0, score), record))

        scored.sort(
            key=lambda item: (
                -item[0],
                _number_distance(item[1].number, requested),
                _number_key(item[1].number),
            )
        )
        return [
            ScoredCandidate(record=record, confidence=score, match_type="fuzzy")
            for score, record in scored[: self.config.max_results]
        ]

    def _geo(self, latitude: float, longitude: float, radius: float) -> list[ScoredCandidate]:
        nearby: list[tuple[float, GazetteerRecord]] = []
        for record in self.records:
            distance = haversine_meters(latitude, longitude, record.latitude, record.longitude)
            if distance <= radius:
                nearby.append((distance, record))
        nearby.sort(key=lambda item: item[0])
        return [
            ScoredCandidate(
                record=record,
                confidence=max(0.0, 1.0 - distance / radius),
                match_type="geographic",
                distance_meters=distance,
            )
            for distance, record in nearby[: self.config.max_results]
        ]


def _row_to_record(row: dict, index: int) -> GazetteerRecord:
    name = str(row.get("street_name") or "")
    return GazetteerRecord(
        id=int(row.get("id") or index),
        via_id=int(row["via_id"]),
        via_code=int(row.get("via_code") or 0),
        street_class=str(row.get("street_class") or ""),
        street_name=name,
        street_name_accents=str(row.get("street_name_accents") or name),
        number=parse_house_number(row.get("number")),
        postal_code=str(row["postal_code"]).strip() if row.get("postal_code") is not None else None,
        district=int(row.get("district") or 0),
        district_name=str(row.get("district_name") or ""),
        neighborhood=row.get("neighborhood"),
        latitude=float(row["latitude"]),
        longitude=float(row["longitude"]),
    )


def records_from_frame(df: pd.DataFrame, columns: Optional[dict[str, str]] = None) -> list[GazetteerRecord]:
    mapper = columns or DEFAULT_GAZETTEER_COLUMNS
    df = df.rename(columns={v: k for k, v in mapper.items() if v in df.columns})
    if "via_id" not in df.columns:
        column = mapper.get("via_id", "via_id")
        raise ConfigError(f"El callejero no tiene la columna de identificador de vía '{column}'")
    records: list[GazetteerRecord] = []
    for idx, row in enumerate(df.to_dict(orient="records"), start=1):
        cleaned = {key: clean_value(value) for key, value in row.items()}
        if cleaned.get("latitude") is None or cleaned.get("longitude") is None:
            logger.warning("Fila {} del callejero sin coordenadas, se omite", idx)
            continue
        if cleaned.get("via_id") is None or str(cleaned["via_id"]).strip() == "":
            raise ConfigError(f"Fila {idx} del callejero sin identificador de vía")
        records.append(_row_to_record(cleaned, idx))
    return records


def load_gazetteer(
    path: Path,
    sheet_name: Optional[str] = None,
    columns: Optional[dict[str, str]] = None,
    config: Optional[SearchConfig] = None,
) -> InMemoryGazetteer:
    mapper = columns or DEFAULT_GAZETTEER_COLUMNS
    df = read_table(path, sheet_name=sheet_name, dtype={mapper.get("postal_code", "codigo_postal"): str})
    return InMemoryGazetteer(records_from_frame(df, mapper), config)
