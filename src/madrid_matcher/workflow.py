from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from .config import WorkflowConfig
from .exceptions import (
    InvalidStepPayloadError,
    OfficialAddressNotFoundError,
    RecordNotFoundError,
    StepAlreadyCompletedError,
    StepOrderError,
)
from .models import Coordinates, DeaRecord, ScoredCandidate, utcnow
from .normalizer import extract_district_number
from .progress import (
    DONE_STEP,
    AddressStepData,
    CoordinatesStepData,
    DistrictStepData,
    PostalCodeStepData,
    StepValidationProgress,
    decode_progress,
)
from .similarity import haversine_meters
from .storage import RecordStore
from .validation import AddressValidationService


class AddressStepPayload(BaseModel):
    selected_address: Optional[ScoredCandidate] = None


class PostalCodeStepPayload(BaseModel):
    confirmed_postal_code: str = Field(min_length=1)


class DistrictStepPayload(BaseModel):
    confirmed_district: int = Field(ge=1, le=21)


class CoordinatesStepPayload(BaseModel):
    confirmed_coordinates: Coordinates


STEP_PAYLOADS: dict[int, type[BaseModel]] = {
    1: AddressStepPayload,
    2: PostalCodeStepPayload,
    3: DistrictStepPayload,
    4: CoordinatesStepPayload,
}


@dataclass
class StepResult:
    progress: StepValidationProgress
    next_step: int
    message: str


class StepValidationService:
    """Flujo de validación en cuatro pasos: dirección, código postal, distrito y coordenadas.

    El paso 1 confirma la dirección oficial y salta automáticamente los pasos
    cuyo valor ya coincide con el callejero. Las correcciones se escriben en el
    registro una sola vez, cuando todos los pasos están resueltos.
    """

    def __init__(
        self,
        validator: AddressValidationService,
        store: RecordStore,
        config: Optional[WorkflowConfig] = None,
    ) -> None:
        self.validator = validator
        self.store = store
        self.config = config or WorkflowConfig()
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, record_id: int) -> asyncio.Lock:
        return self._locks.setdefault(record_id, asyncio.Lock())

    async def initialize_step_validation(self, record_id: int) -> StepResult:
        async with self._lock(record_id):
            await self._require_record(record_id)
            existing = await self.get_progress(record_id)
            if existing is not None and existing.is_complete:
                raise StepAlreadyCompletedError(
                    f"La validación del registro {record_id} ya está completada; use reset para reiniciarla"
                )
            progress = StepValidationProgress.initial(record_id)
            await self._save(progress)
        logger.info("Validación por pasos iniciada para el registro {}", record_id)
        return StepResult(progress, 1, "Validación iniciada. Confirme la dirección encontrada.")

    async def execute_step(
        self, record_id: int, step_number: int, payload: Optional[Mapping[str, Any]] = None
    ) -> StepResult:
        if step_number not in STEP_PAYLOADS:
            raise InvalidStepPayloadError(f"Paso de validación desconocido: {step_number}")
        try:
            parsed = STEP_PAYLOADS[step_number].model_validate(dict(payload or {}))
        except ValidationError as exc:
            raise InvalidStepPayloadError(f"Datos no válidos para el paso {step_number}: {exc}") from exc

        async with self._lock(record_id):
            record = await self._require_record(record_id)
            progress = await self.get_progress(record_id)
            if step_number == 1:
                return await self._execute_address_step(record, progress, parsed)
            return await self._execute_field_step(record, progress, step_number, parsed)

    async def get_progress(self, record_id: int) -> Optional[StepValidationProgress]:
        blob = await self.store.read_progress(record_id)
        try:
            return decode_progress(blob)
        except ValidationError:
            logger.warning("Progreso guardado del registro {} no compatible, se ignora", record_id)
            return None

    async def reset(self, record_id: int) -> bool:
        async with self._lock(record_id):
            removed = await self.store.delete_progress(record_id)
        if removed:
            logger.info("Progreso de validación del registro {} eliminado", record_id)
        return removed

    async def _execute_address_step(
        self,
        record: DeaRecord,
        progress: Optional[StepValidationProgress],
        payload: AddressStepPayload,
    ) -> StepResult:
        if progress is None:
            progress = StepValidationProgress.initial(record.id)
        elif progress.is_complete or progress.step(1).status == "completed":
            raise StepAlreadyCompletedError(f"El paso 1 del registro {record.id} ya está completado")

        official = payload.selected_address
        if official is None:
            validation = await self.validator.validate_query(record.to_query())
            result = validation.search_result
            if not result.is_valid or not result.suggestions:
                raise OfficialAddressNotFoundError("No se encontró dirección oficial. Seleccione una alternativa.")
            official = result.suggestions[0]

        progress.step_data.step1 = AddressStepData(selected_address=official)
        progress.step(1).status = "completed"
        notes = self._analyze_required_steps(record, progress, official)

        skipped = sum(1 for s in progress.steps if s.status == "skipped")
        progress.total_steps = 4 - skipped
        next_step = progress.next_open_step(2)
        if next_step < DONE_STEP:
            progress.step(next_step).status = "current"
        progress.current_step = next_step

        if skipped:
            message = f"Dirección confirmada. {skipped} paso(s) saltado(s) automáticamente. {' '.join(notes)}"
        else:
            message = "Dirección confirmada. Continuando con verificaciones."

        if next_step == DONE_STEP:
            await self._complete(record, progress)
        else:
            await self._save(progress)
        return StepResult(progress, next_step, message)

    def _analyze_required_steps(
        self, record: DeaRecord, progress: StepValidationProgress, official: ScoredCandidate
    ) -> list[str]:
        address = official.record
        notes: list[str] = []

        postal = progress.step(2)
        if address.postal_code and record.postal_code == address.postal_code:
            postal.status, postal.required = "skipped", False
            postal.skip_reason = f"Código postal correcto ({address.postal_code})"
            progress.step_data.step2 = PostalCodeStepData(
                original_postal_code=record.postal_code,
                confirmed_postal_code=address.postal_code,
                user_confirmed=False,
                auto_skipped=True,
            )
            notes.append(postal.skip_reason)
        else:
            postal.status, postal.required = "pending", True
            notes.append(
                f"Código postal requiere confirmación: {record.postal_code or '-'} → {address.postal_code or '-'}"
            )

        district = progress.step(3)
        if extract_district_number(record.district) == address.district:
            district.status, district.required = "skipped", False
            district.skip_reason = f"Distrito correcto ({address.district})"
            progress.step_data.step3 = DistrictStepData(
                original_district=record.district,
                confirmed_district=address.district,
                user_confirmed=False,
                auto_skipped=True,
            )
            notes.append(district.skip_reason)
        else:
            district.status, district.required = "pending", True
            notes.append(f"Distrito requiere confirmación: {record.district or '-'} → {address.district}")

        coordinates = progress.step(4)
        original = record.coordinates()
        distance = None
        if original is not None:
            distance = haversine_meters(original.latitude, original.longitude, address.latitude, address.longitude)
        if distance is not None and distance < self.config.auto_skip_distance_meters:
            coordinates.status, coordinates.required = "skipped", False
            coordinates.skip_reason = f"Coordenadas válidas ({round(distance)}m de diferencia)"
            progress.step_data.step4 = CoordinatesStepData(
                original_coordinates=original,
                confirmed_coordinates=Coordinates(latitude=address.latitude, longitude=address.longitude),
                distance_meters=distance,
                user_confirmed=False,
                auto_skipped=True,
            )
            notes.append(coordinates.skip_reason)
        else:
            coordinates.status, coordinates.required = "pending", True
            if distance is None:
                notes.append("Coordenadas requieren verificación manual (sin coordenadas de referencia)")
            else:
                notes.append(f"Coordenadas requieren verificación ({round(distance)}m de diferencia)")

        return notes

    async def _execute_field_step(
        self,
        record: DeaRecord,
        progress: Optional[StepValidationProgress],
        step_number: int,
        payload: BaseModel,
    ) -> StepResult:
        if progress is None or progress.step_data.step1 is None:
            raise StepOrderError(step_number, 1)
        for earlier in range(2, step_number):
            if progress.step(earlier).status not in ("completed", "skipped"):
                raise StepOrderError(step_number, earlier)
        step = progress.step(step_number)
        if progress.is_complete or step.status in ("completed", "skipped"):
            raise StepAlreadyCompletedError(f"El paso {step_number} del registro {record.id} ya está resuelto")

        if isinstance(payload, PostalCodeStepPayload):
            progress.step_data.step2 = PostalCodeStepData(
                original_postal_code=record.postal_code,
                confirmed_postal_code=payload.confirmed_postal_code.strip(),
            )
        elif isinstance(payload, DistrictStepPayload):
            progress.step_data.step3 = DistrictStepData(
                original_district=record.district,
                confirmed_district=payload.confirmed_district,
            )
        elif isinstance(payload, CoordinatesStepPayload):
            original = record.coordinates()
            confirmed = payload.confirmed_coordinates
            distance = None
            if original is not None:
                distance = haversine_meters(
                    original.latitude, original.longitude, confirmed.latitude, confirmed.longitude
                )
            progress.step_data.step4 = CoordinatesStepData(
                original_coordinates=original,
                confirmed_coordinates=confirmed,
                distance_meters=distance,
            )

        step.status = "completed"
        next_step = progress.next_open_step(step_number + 1)
        if next_step < DONE_STEP:
            progress.step(next_step).status = "current"
        progress.current_step = next_step

        if next_step == DONE_STEP:
            await self._complete(record, progress)
            return StepResult(progress, next_step, "Validación completada")
        await self._save(progress)
        return StepResult(progress, next_step, f"Continuando con paso {next_step}")

    async def _complete(self, record: DeaRecord, progress: StepValidationProgress) -> None:
        # el progreso solo se marca completo si el registro se ha corregido
        fields = self.final_corrections(progress)
        if fields:
            await self.store.update_record_fields(record.id, fields)
        progress.current_step = DONE_STEP
        progress.is_complete = True
        progress.completed_at = utcnow()
        await self._save(progress)
        logger.info("Validación por pasos completada para el registro {}", record.id)

    @staticmethod
    def final_corrections(progress: StepValidationProgress) -> dict[str, Any]:
        data = progress.step_data
        fields: dict[str, Any] = {}
        if data.step1 is not None:
            address = data.step1.selected_address.record
            fields["def_street_type"] = address.street_class
            fields["def_street_name"] = address.street_name_accents
            fields["def_number"] = address.number
        if data.step2 is not None:
            fields["def_postal_code"] = data.step2.confirmed_postal_code
        if data.step3 is not None:
            fields["def_district"] = str(data.step3.confirmed_district)
        if data.step4 is not None:
            fields["def_latitude"] = data.step4.confirmed_coordinates.latitude
            fields["def_longitude"] = data.step4.confirmed_coordinates.longitude
        return fields

    async def _require_record(self, record_id: int) -> DeaRecord:
        record = await self.store.find_record_by_id(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    async def _save(self, progress: StepValidationProgress) -> None:
        progress.revision += 1
        await self.store.write_progress(progress.record_id, progress.to_json())
