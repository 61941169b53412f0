from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from .models import AddressQuery, ScoredCandidate
from .similarity import haversine_meters

MISSING_NUMBER_DISTANCE = 999


@dataclass
class CorrectionWeights:
    number_penalty_per_unit: float = 0.05
    max_number_penalty: float = 0.4
    position_penalty: float = 0.03
    exact_number_bonus: float = 0.1
    street_found_bonus: float = 0.1
    min_confidence: float = 0.1


class CandidateCorrector:
    """Recalcula la confianza de los candidatos de una vía ya resuelta.

    Los candidatos se ordenan por cercanía al número pedido antes de aplicar
    penalizaciones y bonificaciones, de modo que el índice 0 es siempre el
    portal más próximo. Las bonificaciones nunca superan ``1 - penalizaciones``:
    una discrepancia de número o de posición siempre queda reflejada en la
    confianza final.
    """

    def __init__(self, weights: Optional[CorrectionWeights] = None, coordinate_tolerance_meters: float = 100.0) -> None:
        self.weights = weights or CorrectionWeights()
        self.coordinate_tolerance_meters = coordinate_tolerance_meters

    def correct(self, query: AddressQuery, candidates: Iterable[ScoredCandidate]) -> List[ScoredCandidate]:
        requested = query.requested_number()
        ordered = list(candidates)
        if requested is not None:
            ordered.sort(key=lambda c: self._number_gap(c.record.number, requested))
        return [self._rescore(candidate, index, requested) for index, candidate in enumerate(ordered)]

    def number_penalty(self, requested: Optional[int], number: Optional[int]) -> float:
        if requested is None or number is None or requested == number:
            return 0.0
        difference = abs(requested - number)
        return min(self.weights.max_number_penalty, difference * self.weights.number_penalty_per_unit)

    def correction_warnings(self, query: AddressQuery, best: ScoredCandidate) -> List[str]:
        warnings: List[str] = []
        record = best.record
        requested = query.requested_number()

        if query.street_number and record.number is not None:
            if requested is not None and requested != record.number:
                difference = abs(requested - record.number)
                if difference <= 2:
                    label = "Número de calle cercano encontrado"
                elif difference <= 10:
                    label = "Número de calle diferente"
                else:
                    label = "Número de calle muy diferente"
                warnings.append(
                    f"{label}: solicitado {requested}, encontrado {record.number} (diferencia: {difference})"
                )
        elif query.street_number and record.number is None:
            warnings.append(
                f"Número de calle solicitado ({query.street_number}) no encontrado en la dirección oficial"
            )

        if query.postal_code and record.postal_code and query.postal_code != record.postal_code:
            warnings.append(
                f"Código postal corregido automáticamente: {query.postal_code} → {record.postal_code}"
            )

        district = query.district_number()
        if district > 0 and district != record.district:
            warnings.append(f"Distrito corregido automáticamente: {query.district} → {record.district}")

        if query.coordinates is not None:
            distance = haversine_meters(
                query.coordinates.latitude,
                query.coordinates.longitude,
                record.latitude,
                record.longitude,
            )
            if distance > self.coordinate_tolerance_meters:
                warnings.append(f"Coordenadas corregidas automáticamente (diferencia: {round(distance)}m)")

        return warnings

    def _rescore(self, candidate: ScoredCandidate, index: int, requested: Optional[int]) -> ScoredCandidate:
        w = self.weights
        number = candidate.record.number
        confidence = candidate.confidence

        number_penalty = self.number_penalty(requested, number)
        if number_penalty:
            confidence = max(w.min_confidence, confidence - number_penalty)

        position_penalty = index * w.position_penalty
        if index > 0:
            confidence = max(w.min_confidence, confidence - position_penalty)

        ceiling = max(w.min_confidence, 1.0 - number_penalty - position_penalty)
        if requested is not None and number == requested:
            confidence = min(ceiling, confidence + w.exact_number_bonus)
        confidence = min(ceiling, confidence + w.street_found_bonus)

        return candidate.with_confidence(confidence)

    @staticmethod
    def _number_gap(number: Optional[int], requested: int) -> int:
        if number is None:
            return MISSING_NUMBER_DISTANCE
        return abs(number - requested)
