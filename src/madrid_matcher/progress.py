from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from .models import Coordinates, ScoredCandidate, utcnow

SCHEMA_VERSION = 1
DONE_STEP = 5

StepStatus = Literal["pending", "current", "completed", "skipped"]

STEP_TITLES = {
    1: "Confirmar Dirección",
    2: "Verificar Código Postal",
    3: "Verificar Distrito",
    4: "Verificar Coordenadas",
}


class ValidationStep(BaseModel):
    step_number: int
    title: str
    status: StepStatus = "pending"
    required: bool = True
    skip_reason: Optional[str] = None


class AddressStepData(BaseModel):
    kind: Literal["address"] = "address"
    selected_address: ScoredCandidate
    user_confirmed: bool = True
    timestamp: datetime = Field(default_factory=utcnow)


class PostalCodeStepData(BaseModel):
    kind: Literal["postal_code"] = "postal_code"
    original_postal_code: str = ""
    confirmed_postal_code: str
    user_confirmed: bool = True
    auto_skipped: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class DistrictStepData(BaseModel):
    kind: Literal["district"] = "district"
    original_district: str = ""
    confirmed_district: int
    user_confirmed: bool = True
    auto_skipped: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class CoordinatesStepData(BaseModel):
    kind: Literal["coordinates"] = "coordinates"
    original_coordinates: Optional[Coordinates] = None
    confirmed_coordinates: Coordinates
    distance_meters: Optional[float] = None
    user_confirmed: bool = True
    auto_skipped: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class StepData(BaseModel):
    step1: Optional[AddressStepData] = None
    step2: Optional[PostalCodeStepData] = None
    step3: Optional[DistrictStepData] = None
    step4: Optional[CoordinatesStepData] = None


class StepValidationProgress(BaseModel):
    """Estado persistido del flujo de validación paso a paso de un registro.

    Se guarda como JSON opaco por ``record_id``. ``schema_version`` permite
    rechazar blobs escritos con un esquema anterior y ``revision`` aumenta en
    cada escritura.
    """

    schema_version: Literal[1] = SCHEMA_VERSION
    record_id: int
    current_step: int = 1
    total_steps: int = 4
    steps: list[ValidationStep] = Field(default_factory=list)
    step_data: StepData = Field(default_factory=StepData)
    is_complete: bool = False
    completed_at: Optional[datetime] = None
    revision: int = 0

    @classmethod
    def initial(cls, record_id: int) -> "StepValidationProgress":
        steps = [
            ValidationStep(step_number=number, title=title, status="current" if number == 1 else "pending")
            for number, title in STEP_TITLES.items()
        ]
        return cls(record_id=record_id, steps=steps)

    def step(self, number: int) -> ValidationStep:
        for step in self.steps:
            if step.step_number == number:
                return step
        raise KeyError(number)

    def next_open_step(self, start: int) -> int:
        for number in range(start, DONE_STEP):
            if self.step(number).status in ("pending", "current"):
                return number
        return DONE_STEP

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, blob: str) -> "StepValidationProgress":
        return cls.model_validate_json(blob)


def decode_progress(blob: Optional[str]) -> Optional[StepValidationProgress]:
    """Devuelve None si no hay blob; propaga ``ValidationError`` si el blob no es compatible."""
    if not blob:
        return None
    return StepValidationProgress.from_json(blob)

