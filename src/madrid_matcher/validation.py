from __future__ import annotations

from typing import List, Optional, Sequence, Union

from loguru import logger

from .config import SearchConfig
from .gazetteer import AddressRepository
from .models import (
    AddressQuery,
    AppliedCorrections,
    ComprehensiveAddressValidation,
    Coordinates,
    CoordinatesValidation,
    DistrictValidation,
    OverallStatus,
    PostalCodeValidation,
    ScoredCandidate,
    SearchResult,
    StreetNameValidation,
    StreetNumberValidation,
    StreetTypeValidation,
    ValidationDetails,
)
from .normalizer import AddressNormalizer, normalize, street_types_equivalent
from .scorer import CandidateCorrector
from .similarity import haversine_meters, string_similarity
from .strategies import (
    CrossReferenceStrategy,
    ExactStreetStrategy,
    FuzzyStreetStrategy,
    GeographicStrategy,
    SearchStrategy,
)

MIN_VALID_CONFIDENCE = 0.6
VALID_STATUS_CONFIDENCE = 0.95
NAME_MATCH_SIMILARITY = 0.9
MANUAL_REVIEW_WARNING = "El nombre de vía introducido requiere revisión manual"


class AddressValidationService:
    def __init__(
        self,
        repository: AddressRepository,
        config: Optional[SearchConfig] = None,
        strategies: Optional[Sequence[SearchStrategy]] = None,
    ) -> None:
        self.repository = repository
        self.config = config or SearchConfig()
        self.corrector = CandidateCorrector(coordinate_tolerance_meters=self.config.coordinate_tolerance_meters)
        self.display = AddressNormalizer()
        self.strategies: List[SearchStrategy] = (
            list(strategies) if strategies is not None else self._default_strategies()
        )

    def _default_strategies(self) -> List[SearchStrategy]:
        strategies: List[SearchStrategy] = []
        if self.config.prioritize_exact_matches:
            strategies.append(ExactStreetStrategy(self.repository, self.corrector))
        if self.config.enable_fuzzy_search:
            strategies.append(FuzzyStreetStrategy(self.repository, self.corrector))
            strategies.append(CrossReferenceStrategy(self.repository))
        if self.config.enable_geographic_search:
            strategies.append(GeographicStrategy(self.repository))
        return strategies

    async def validate_address(
        self,
        street_type: Optional[str],
        street_name: str,
        street_number: Union[str, int, None] = None,
        postal_code: Optional[str] = None,
        district: Union[int, str, None] = None,
        coordinates: Optional[Coordinates] = None,
    ) -> ComprehensiveAddressValidation:
        query = AddressQuery(
            street_type=street_type,
            street_name=street_name,
            street_number=street_number,
            postal_code=postal_code,
            district=district,
            coordinates=coordinates,
        )
        return await self.validate_query(query)

    async def validate_query(self, query: AddressQuery) -> ComprehensiveAddressValidation:
        search_result = await self.search(query)
        details = await self.detailed_validation(query, search_result.suggestions)
        status = self.overall_status(search_result, details)
        actions = self.recommended_actions(search_result, details)
        corrections = self.applied_corrections(search_result)
        logger.debug(
            "Validación de {!r}: estado={} confianza={:.2f} tipo={}",
            query.street_name,
            status,
            search_result.confidence,
            search_result.match_type,
        )
        return ComprehensiveAddressValidation(
            search_result=search_result,
            validation_details=details,
            overall_status=status,
            recommended_actions=actions,
            applied_corrections=corrections,
        )

    async def search(self, query: AddressQuery) -> SearchResult:
        warnings: List[str] = []
        if query.street_name and self.display.needs_manual_review(query.street_name, normalize(query.street_name)):
            warnings.append(MANUAL_REVIEW_WARNING)
        for strategy in self.strategies:
            outcome = await strategy.run(query)
            warnings.extend(outcome.warnings)
            if not outcome.candidates:
                continue

            suggestions = outcome.candidates[: self.config.max_results]
            best = suggestions[0]
            is_valid = best.confidence >= MIN_VALID_CONFIDENCE
            if not is_valid:
                warnings.append("Las coincidencias encontradas tienen baja confianza")
            return SearchResult(
                is_valid=is_valid,
                confidence=best.confidence,
                match_type=outcome.match_type,
                suggestions=suggestions,
                errors=[],
                warnings=warnings,
            )

        return SearchResult(
            is_valid=False,
            confidence=0.0,
            match_type="exact",
            suggestions=[],
            errors=["No se encontraron direcciones que coincidan con el nombre y tipo de vía especificados"],
            warnings=warnings,
        )

    async def detailed_validation(
        self, query: AddressQuery, suggestions: Sequence[ScoredCandidate]
    ) -> ValidationDetails:
        details = ValidationDetails(
            street_name=StreetNameValidation(input=query.street_name),
            street_type=StreetTypeValidation(input=query.street_type or ""),
            street_number=StreetNumberValidation(input=query.street_number),
            postal_code=PostalCodeValidation(input=query.postal_code or ""),
            district=DistrictValidation(input=query.district if query.district is not None else ""),
            coordinates=CoordinatesValidation(input=query.coordinates),
        )

        if not suggestions:
            details.street_name.needs_correction = True
            details.street_type.needs_correction = True
            details.street_number.needs_correction = True
            details.postal_code.needs_correction = True
            details.district.needs_correction = True
            details.coordinates.needs_review = True
            return details

        best = suggestions[0].record

        details.street_name.official = best.street_name_accents
        details.street_name.similarity = string_similarity(query.street_name, best.street_name_accents)
        details.street_name.needs_correction = details.street_name.similarity < NAME_MATCH_SIMILARITY

        details.street_type.official = best.street_class
        if query.street_type:
            details.street_type.needs_correction = not street_types_equivalent(query.street_type, best.street_class)

        requested = query.requested_number()
        if query.street_number and best.number is not None:
            details.street_number.official = best.number
            details.street_number.needs_correction = requested != best.number
            details.street_number.in_valid_range = (
                requested is not None
                and await self.repository.number_in_range(best.via_id, best.district, requested)
            )
        elif query.street_number:
            details.street_number.needs_correction = True

        if query.postal_code and best.postal_code:
            details.postal_code.official = best.postal_code
            details.postal_code.needs_correction = query.postal_code != best.postal_code

        details.district.official = best.district
        details.district.needs_correction = query.district_number() != best.district

        if query.coordinates is not None:
            details.coordinates.official = Coordinates(latitude=best.latitude, longitude=best.longitude)
            distance = haversine_meters(
                query.coordinates.latitude, query.coordinates.longitude, best.latitude, best.longitude
            )
            details.coordinates.distance_meters = distance
            details.coordinates.needs_review = distance > self.config.coordinate_tolerance_meters

        return details

    @staticmethod
    def overall_status(search_result: SearchResult, details: ValidationDetails) -> OverallStatus:
        if not search_result.is_valid or not search_result.suggestions:
            return "invalid"
        if details.has_corrections():
            return "needs_review"
        if search_result.confidence >= VALID_STATUS_CONFIDENCE and search_result.match_type == "exact":
            return "valid"
        return "needs_review"

    def recommended_actions(self, search_result: SearchResult, details: ValidationDetails) -> List[str]:
        if not search_result.is_valid:
            return [
                "Verificar la dirección manualmente",
                "Comprobar si la dirección existe en el callejero oficial",
            ]

        actions: List[str] = []
        if details.street_name.needs_correction and details.street_name.official:
            actions.append(f'Corregir nombre de vía a: "{self.display.display_name(details.street_name.official)}"')
        if details.street_type.needs_correction and details.street_type.official:
            actions.append(f'Corregir tipo de vía a: "{self.display.display_name(details.street_type.official)}"')
        if details.street_number.needs_correction and details.street_number.official is not None:
            actions.append(f"Corregir número a: {details.street_number.official}")
        if details.postal_code.needs_correction and details.postal_code.official:
            actions.append(f"Corregir código postal a: {details.postal_code.official}")
        if details.district.needs_correction and details.district.official:
            actions.append(f"Corregir distrito a: {details.district.official}")
        if details.coordinates.needs_review and details.coordinates.official is not None:
            distance = details.coordinates.distance_meters or 0.0
            actions.append(f"Revisar coordenadas (distancia: {round(distance)}m de la dirección oficial)")
        if details.street_number.input and not details.street_number.in_valid_range:
            actions.append("Verificar que el número esté en el rango válido para esta vía")

        if not actions:
            actions.append("Dirección validada correctamente")
        return actions

    @staticmethod
    def applied_corrections(search_result: SearchResult) -> Optional[AppliedCorrections]:
        if not search_result.is_valid or not search_result.suggestions:
            return None
        best = search_result.suggestions[0].record
        return AppliedCorrections(
            street_name=best.street_name_accents,
            street_type=best.street_class,
            street_number=str(best.number) if best.number is not None else None,
            postal_code=best.postal_code,
            district=best.district,
            coordinates=Coordinates(latitude=best.latitude, longitude=best.longitude),
        )


def used_strategies(validation: ComprehensiveAddressValidation) -> List[str]:
    match_types = {s.match_type for s in validation.search_result.suggestions}
    used = [name for name in ("exact", "fuzzy", "geographic") if name in match_types]
    return used or ["none"]
