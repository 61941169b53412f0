from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List

from loguru import logger

from .gazetteer import AddressRepository
from .models import AddressQuery, MatchType, ScoredCandidate
from .normalizer import street_types_equivalent
from .scorer import CandidateCorrector
from .similarity import street_name_similarity, string_similarity

STREET_MATCH_MIN_SIMILARITY = 0.5
POSTAL_MISMATCH_PENALTY = 0.3
DISTRICT_MISMATCH_PENALTY = 0.3
TYPE_MISMATCH_PENALTY = 0.2
CROSS_REFERENCE_MIN_SCORE = 0.4
GEO_MIN_TEXT_SIMILARITY = 0.3
GEO_TEXT_WEIGHT = 0.5
GEO_COHERENCE_BONUS = 0.3


@dataclass
class StrategyOutcome:
    strategy: str
    match_type: MatchType
    candidates: List[ScoredCandidate] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class SearchStrategy(ABC):
    name: str = ""
    match_type: MatchType = "exact"

    def __init__(self, repository: AddressRepository) -> None:
        self.repository = repository

    async def run(self, query: AddressQuery) -> StrategyOutcome:
        try:
            return await self.search(query)
        except Exception:
            logger.exception("La estrategia {} falló, se continúa con la siguiente", self.name)
            return self.empty()

    def empty(self) -> StrategyOutcome:
        return StrategyOutcome(strategy=self.name, match_type=self.match_type)

    @abstractmethod
    async def search(self, query: AddressQuery) -> StrategyOutcome:
        ...


class ExactStreetStrategy(SearchStrategy):
    name = "exact"
    match_type: MatchType = "exact"

    def __init__(self, repository: AddressRepository, corrector: CandidateCorrector) -> None:
        super().__init__(repository)
        self.corrector = corrector

    async def search(self, query: AddressQuery) -> StrategyOutcome:
        found = await self.repository.search_exact(query.street_only())
        if not found:
            return self.empty()
        corrected = self.corrector.correct(query, found)
        warnings = self.corrector.correction_warnings(query, corrected[0])
        return StrategyOutcome(self.name, self.match_type, corrected, warnings)


class FuzzyStreetStrategy(SearchStrategy):
    name = "fuzzy"
    match_type: MatchType = "fuzzy"

    def __init__(self, repository: AddressRepository, corrector: CandidateCorrector) -> None:
        super().__init__(repository)
        self.corrector = corrector

    async def search(self, query: AddressQuery) -> StrategyOutcome:
        found = await self.repository.search_fuzzy(query.street_only())
        accepted = [c for c in found if self.is_same_street(query, c)]
        if not accepted:
            return self.empty()
        corrected = self.corrector.correct(query, accepted)
        warnings = ["Se encontró vía similar, se corrigieron otros campos automáticamente"]
        warnings.extend(self.corrector.correction_warnings(query, corrected[0]))
        return StrategyOutcome(self.name, self.match_type, corrected, warnings)

    @staticmethod
    def is_same_street(query: AddressQuery, candidate: ScoredCandidate) -> bool:
        similarity = street_name_similarity(query.street_name, candidate.record.street_name_accents)
        if similarity < STREET_MATCH_MIN_SIMILARITY:
            return False
        if query.street_type:
            return street_types_equivalent(query.street_type, candidate.record.street_class)
        return True


class CrossReferenceStrategy(SearchStrategy):
    name = "fuzzy"
    match_type: MatchType = "fuzzy"

    async def search(self, query: AddressQuery) -> StrategyOutcome:
        found = await self.repository.search_fuzzy(query)
        kept: List[ScoredCandidate] = []
        for candidate in found:
            score = max(0.0, candidate.confidence - self.penalties(query, candidate))
            if score >= CROSS_REFERENCE_MIN_SCORE:
                kept.append(candidate.with_confidence(score))
        if not kept:
            return self.empty()
        kept.sort(key=lambda c: c.confidence, reverse=True)
        warnings = ["No se encontró la vía exacta, se muestran resultados con validación cruzada"]
        return StrategyOutcome(self.name, self.match_type, kept, warnings)

    @staticmethod
    def penalties(query: AddressQuery, candidate: ScoredCandidate) -> float:
        record = candidate.record
        total = 0.0
        if query.postal_code and record.postal_code and query.postal_code != record.postal_code:
            total += POSTAL_MISMATCH_PENALTY
        district = query.district_number()
        if district > 0 and district != record.district:
            total += DISTRICT_MISMATCH_PENALTY
        if query.street_type and not street_types_equivalent(query.street_type, record.street_class):
            total += TYPE_MISMATCH_PENALTY
        return total


class GeographicStrategy(SearchStrategy):
    name = "geographic"
    match_type: MatchType = "geographic"

    async def search(self, query: AddressQuery) -> StrategyOutcome:
        if query.coordinates is None:
            return self.empty()
        found = await self.repository.search_geo(query.coordinates.latitude, query.coordinates.longitude)
        kept: List[ScoredCandidate] = []
        for candidate in found:
            similarity = string_similarity(query.street_name, candidate.record.street_name_accents)
            coherent = self.is_coherent(query, candidate)
            if similarity >= GEO_MIN_TEXT_SIMILARITY or coherent:
                bonus = similarity * GEO_TEXT_WEIGHT + (GEO_COHERENCE_BONUS if coherent else 0.0)
                kept.append(candidate.with_confidence(min(1.0, candidate.confidence + bonus)))

        warnings: List[str] = []
        if kept:
            kept.sort(key=lambda c: c.confidence, reverse=True)
            warnings.append("Se encontraron direcciones cercanas geográficamente con validación textual")
        discarded = len(found) - len(kept)
        if discarded > 0:
            warnings.append(f"Se descartaron {discarded} resultados geográficos por baja similitud textual")
        return StrategyOutcome(self.name, self.match_type, kept, warnings)

    @staticmethod
    def is_coherent(query: AddressQuery, candidate: ScoredCandidate) -> bool:
        record = candidate.record
        if query.postal_code and record.postal_code and query.postal_code != record.postal_code:
            return False
        district = query.district_number()
        if district > 0 and district != record.district:
            return False
        return True
