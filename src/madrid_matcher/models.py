from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .normalizer import extract_district_number

MatchType = Literal["exact", "fuzzy", "partial", "geographic"]
OverallStatus = Literal["valid", "needs_review", "invalid"]

_LEADING_NUMBER = re.compile(r"^\s*(\d+)")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_house_number(value: Union[int, str, None]) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    match = _LEADING_NUMBER.match(str(value))
    if match:
        return int(match.group(1))
    return None


class Coordinates(BaseModel):
    latitude: float
    longitude: float


class AddressQuery(BaseModel):
    street_type: Optional[str] = None
    street_name: str
    street_number: Optional[str] = None
    postal_code: Optional[str] = None
    district: Optional[Union[int, str]] = None
    coordinates: Optional[Coordinates] = None

    @field_validator("street_number", "postal_code", mode="before")
    @classmethod
    def stringify(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def requested_number(self) -> Optional[int]:
        return parse_house_number(self.street_number)

    def district_number(self) -> int:
        return extract_district_number(self.district)

    def street_only(self) -> "AddressQuery":
        return AddressQuery(
            street_type=self.street_type,
            street_name=self.street_name,
            street_number=self.street_number,
        )


class GazetteerRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    via_id: int
    via_code: int = 0
    street_class: str
    street_name: str
    street_name_accents: str
    number: Optional[int] = None
    postal_code: Optional[str] = None
    district: int = 0
    district_name: str = ""
    neighborhood: Optional[str] = None
    latitude: float
    longitude: float


class ScoredCandidate(BaseModel):
    record: GazetteerRecord
    confidence: float
    match_type: MatchType
    distance_meters: Optional[float] = None

    def with_confidence(self, confidence: float) -> "ScoredCandidate":
        return self.model_copy(update={"confidence": confidence})


class SearchResult(BaseModel):
    is_valid: bool
    confidence: float
    match_type: MatchType
    suggestions: list[ScoredCandidate] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class StreetNameValidation(BaseModel):
    input: str
    official: Optional[str] = None
    needs_correction: bool = False
    similarity: float = 0.0


class StreetTypeValidation(BaseModel):
    input: str = ""
    official: Optional[str] = None
    needs_correction: bool = False


class StreetNumberValidation(BaseModel):
    input: Optional[str] = None
    official: Optional[int] = None
    needs_correction: bool = False
    in_valid_range: bool = False


class PostalCodeValidation(BaseModel):
    input: str = ""
    official: Optional[str] = None
    needs_correction: bool = False


class DistrictValidation(BaseModel):
    input: Union[int, str] = ""
    official: Optional[int] = None
    needs_correction: bool = False


class CoordinatesValidation(BaseModel):
    input: Optional[Coordinates] = None
    official: Optional[Coordinates] = None
    distance_meters: Optional[float] = None
    needs_review: bool = False


class ValidationDetails(BaseModel):
    street_name: StreetNameValidation
    street_type: StreetTypeValidation
    street_number: StreetNumberValidation
    postal_code: PostalCodeValidation
    district: DistrictValidation
    coordinates: CoordinatesValidation

    def has_corrections(self) -> bool:
        return (
            self.street_name.needs_correction
            or self.street_type.needs_correction
            or self.street_number.needs_correction
            or self.postal_code.needs_correction
            or self.district.needs_correction
            or self.coordinates.needs_review
        )


class AppliedCorrections(BaseModel):
    street_name: Optional[str] = None
    street_type: Optional[str] = None
    street_number: Optional[str] = None
    postal_code: Optional[str] = None
    district: Optional[int] = None
    coordinates: Optional[Coordinates] = None


class ComprehensiveAddressValidation(BaseModel):
    search_result: SearchResult
    validation_details: ValidationDetails
    overall_status: OverallStatus
    recommended_actions: list[str] = Field(default_factory=list)
    applied_corrections: Optional[AppliedCorrections] = None


class DeaRecord(BaseModel):
    id: int
    street_type: str = ""
    street_name: str
    street_number: Optional[str] = None
    postal_code: str = ""
    district: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    def_street_type: Optional[str] = None
    def_street_name: Optional[str] = None
    def_number: Optional[int] = None
    def_postal_code: Optional[str] = None
    def_district: Optional[str] = None
    def_latitude: Optional[float] = None
    def_longitude: Optional[float] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("street_type", "postal_code", "district", mode="before")
    @classmethod
    def text_or_empty(cls, value: object) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("street_number", mode="before")
    @classmethod
    def optional_text(cls, value: object) -> Optional[str]:
        if value is None:
            return None
        return str(value).strip() or None

    def coordinates(self) -> Optional[Coordinates]:
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinates(latitude=self.latitude, longitude=self.longitude)

    def to_query(self) -> AddressQuery:
        return AddressQuery(
            street_type=self.street_type or None,
            street_name=self.street_name,
            street_number=self.street_number or None,
            postal_code=self.postal_code or None,
            district=self.district or None,
            coordinates=self.coordinates(),
        )


class AddressValidationRecord(BaseModel):
    record_id: int
    suggestions: list[ScoredCandidate] = Field(default_factory=list)
    validation_details: Optional[ValidationDetails] = None
    overall_status: OverallStatus = "invalid"
    recommended_actions: list[str] = Field(default_factory=list)
    strategies_used: list[str] = Field(default_factory=list)
    processing_ms: int = 0
    needs_reprocessing: bool = False
    retry_count: int = 0
    error_message: Optional[str] = None
    processed_at: datetime = Field(default_factory=utcnow)
