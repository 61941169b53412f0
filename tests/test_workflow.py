import asyncio
import gc

import pytest

from madrid_matcher.exceptions import (
    InvalidStepPayloadError,
    OfficialAddressNotFoundError,
    RecordNotFoundError,
    StepAlreadyCompletedError,
    StepOrderError,
)
from madrid_matcher.progress import StepValidationProgress
from madrid_matcher.storage import InMemoryRecordStore
from madrid_matcher.workflow import StepValidationService


def statuses(progress):
    return [step.status for step in progress.steps]


@pytest.mark.asyncio
async def test_initialize_creates_pending_steps(workflow, store):
    result = await workflow.initialize_step_validation(2)
    assert result.next_step == 1
    assert result.message == "Validación iniciada. Confirme la dirección encontrada."
    assert statuses(result.progress) == ["current", "pending", "pending", "pending"]
    assert result.progress.total_steps == 4
    assert await store.read_progress(2) is not None


@pytest.mark.asyncio
async def test_initialize_unknown_record(workflow):
    with pytest.raises(RecordNotFoundError):
        await workflow.initialize_step_validation(999)


@pytest.mark.asyncio
async def test_matching_record_completes_after_first_step(workflow, store):
    await workflow.initialize_step_validation(1)
    result = await workflow.execute_step(1, 1)

    progress = result.progress
    assert progress.is_complete
    assert progress.current_step == 5
    assert result.next_step == 5
    assert progress.completed_at is not None
    assert statuses(progress) == ["completed", "skipped", "skipped", "skipped"]
    assert progress.total_steps == 1
    assert progress.step(2).skip_reason == "Código postal correcto (28013)"
    assert progress.step(3).skip_reason == "Distrito correcto (1)"
    assert progress.step(4).skip_reason == "Coordenadas válidas (0m de diferencia)"
    assert progress.step_data.step2.auto_skipped

    record = store.records[1]
    assert record.def_street_type == "CALLE"
    assert record.def_street_name == "Gran Vía"
    assert record.def_number == 1
    assert record.def_postal_code == "28013"
    assert record.def_district == "1"
    assert record.def_latitude == pytest.approx(40.4200)


@pytest.mark.asyncio
async def test_full_walkthrough_with_corrections(workflow, store):
    await workflow.initialize_step_validation(2)
    first = await workflow.execute_step(2, 1)
    assert first.next_step == 2
    assert statuses(first.progress) == ["completed", "current", "pending", "pending"]
    assert first.progress.total_steps == 4
    assert first.message == "Dirección confirmada. Continuando con verificaciones."

    second = await workflow.execute_step(2, 2, {"confirmed_postal_code": "28045"})
    assert second.next_step == 3
    assert second.message == "Continuando con paso 3"

    third = await workflow.execute_step(2, 3, {"confirmed_district": 2})
    assert third.next_step == 4

    fourth = await workflow.execute_step(
        2, 4, {"confirmed_coordinates": {"latitude": 40.3950, "longitude": -3.6990}}
    )
    assert fourth.next_step == 5
    assert fourth.message == "Validación completada"
    assert fourth.progress.is_complete
    assert fourth.progress.step_data.step4.distance_meters == pytest.approx(444.8, abs=1)

    record = store.records[2]
    assert record.def_postal_code == "28045"
    assert record.def_district == "2"
    assert record.def_latitude == pytest.approx(40.3950)
    assert record.def_number == 2
    # los campos originales no se modifican
    assert record.postal_code == "28012"


@pytest.mark.asyncio
async def test_step_before_prerequisite_does_not_mutate(workflow, store):
    await workflow.initialize_step_validation(2)
    with pytest.raises(StepOrderError) as exc_info:
        await workflow.execute_step(2, 2, {"confirmed_postal_code": "28045"})
    assert exc_info.value.missing_step == 1

    await workflow.execute_step(2, 1)
    before = await store.read_progress(2)
    with pytest.raises(StepOrderError) as exc_info:
        await workflow.execute_step(2, 3, {"confirmed_district": 2})
    assert exc_info.value.missing_step == 2
    assert "debe completar el paso 2 primero" in str(exc_info.value)
    assert await store.read_progress(2) == before


@pytest.mark.asyncio
async def test_completed_step_cannot_be_repeated(workflow):
    await workflow.initialize_step_validation(2)
    await workflow.execute_step(2, 1)
    await workflow.execute_step(2, 2, {"confirmed_postal_code": "28045"})
    with pytest.raises(StepAlreadyCompletedError):
        await workflow.execute_step(2, 2, {"confirmed_postal_code": "28045"})
    with pytest.raises(StepAlreadyCompletedError):
        await workflow.execute_step(2, 1)


@pytest.mark.asyncio
async def test_skipped_step_cannot_be_executed(workflow):
    await workflow.execute_step(1, 1)
    with pytest.raises(StepAlreadyCompletedError):
        await workflow.execute_step(1, 2, {"confirmed_postal_code": "28013"})


@pytest.mark.asyncio
async def test_invalid_payloads(workflow):
    await workflow.initialize_step_validation(2)
    with pytest.raises(InvalidStepPayloadError):
        await workflow.execute_step(2, 7)
    with pytest.raises(InvalidStepPayloadError):
        await workflow.execute_step(2, 3, {"confirmed_district": 30})
    with pytest.raises(InvalidStepPayloadError):
        await workflow.execute_step(2, 2, {})


@pytest.mark.asyncio
async def test_no_official_address_is_reported(workflow, store):
    with pytest.raises(OfficialAddressNotFoundError):
        await workflow.execute_step(3, 1)
    assert await store.read_progress(3) is None


@pytest.mark.asyncio
async def test_operator_selected_address_is_used(workflow, validator):
    alternatives = await validator.validate_address("Calle", "Gran Vía", "12")
    selected = alternatives.search_result.suggestions[0]
    result = await workflow.execute_step(3, 1, {"selected_address": selected.model_dump()})
    assert result.progress.step_data.step1.selected_address.record.number == 12
    # sin coordenadas en el registro no se puede saltar el paso 4
    assert result.progress.step(4).status == "pending"


@pytest.mark.asyncio
async def test_progress_round_trips_through_store(workflow, store):
    await workflow.initialize_step_validation(2)
    result = await workflow.execute_step(2, 1)
    stored = await workflow.get_progress(2)
    assert stored == result.progress
    assert stored.revision == 2
    assert StepValidationProgress.from_json(await store.read_progress(2)).schema_version == 1


@pytest.mark.asyncio
async def test_incompatible_progress_is_ignored(workflow, store):
    await store.write_progress(2, '{"schema_version": 99, "record_id": 2}')
    assert await workflow.get_progress(2) is None


@pytest.mark.asyncio
async def test_concurrent_submissions_are_serialised(workflow):
    await workflow.initialize_step_validation(2)
    await workflow.execute_step(2, 1)
    payload = {"confirmed_postal_code": "28045"}
    results = await asyncio.gather(
        workflow.execute_step(2, 2, payload),
        workflow.execute_step(2, 2, payload),
        return_exceptions=True,
    )
    assert sum(1 for r in results if isinstance(r, StepAlreadyCompletedError)) == 1
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1


@pytest.mark.asyncio
async def test_reset_removes_progress(workflow, store):
    await workflow.initialize_step_validation(2)
    assert await workflow.reset(2)
    assert await store.read_progress(2) is None
    assert not await workflow.reset(2)


@pytest.mark.asyncio
async def test_completed_progress_cannot_be_reinitialized(workflow, store):
    await workflow.initialize_step_validation(1)
    await workflow.execute_step(1, 1)

    with pytest.raises(StepAlreadyCompletedError):
        await workflow.initialize_step_validation(1)
    progress = await workflow.get_progress(1)
    assert progress.is_complete
    assert progress.current_step == 5

    assert await workflow.reset(1)
    result = await workflow.initialize_step_validation(1)
    assert not result.progress.is_complete


class FlakyRecordStore(InMemoryRecordStore):
    def __init__(self, records):
        super().__init__(records)
        self.failures = 1

    async def update_record_fields(self, record_id, fields):
        if self.failures:
            self.failures -= 1
            raise RuntimeError("fallo de escritura")
        return await super().update_record_fields(record_id, fields)


@pytest.mark.asyncio
async def test_failed_record_update_leaves_step_retryable(validator, dea_records):
    store = FlakyRecordStore(dea_records)
    workflow = StepValidationService(validator, store)
    await workflow.initialize_step_validation(1)

    with pytest.raises(RuntimeError):
        await workflow.execute_step(1, 1)
    progress = await workflow.get_progress(1)
    assert not progress.is_complete
    assert progress.step(1).status == "current"
    assert store.records[1].def_postal_code is None

    result = await workflow.execute_step(1, 1)
    assert result.progress.is_complete
    assert store.records[1].def_postal_code == "28013"


@pytest.mark.asyncio
async def test_record_locks_are_released(workflow):
    await workflow.initialize_step_validation(2)
    await workflow.execute_step(2, 1)
    await workflow.reset(2)
    gc.collect()
    assert 2 not in workflow._locks
