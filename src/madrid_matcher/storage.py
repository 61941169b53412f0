from __future__ import annotations

from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from loguru import logger

from .config import DEFAULT_RECORD_COLUMNS
from .exceptions import RecordNotFoundError
from .models import AddressValidationRecord, DeaRecord, utcnow
from .tables import clean_value, read_table


class RecordStore(ABC):
    """Registros DEA, progreso de validación y resultados precalculados."""

    @abstractmethod
    async def find_record_by_id(self, record_id: int) -> Optional[DeaRecord]:
        ...

    @abstractmethod
    async def update_record_fields(self, record_id: int, fields: dict[str, Any]) -> DeaRecord:
        ...

    @abstractmethod
    async def read_progress(self, record_id: int) -> Optional[str]:
        ...

    @abstractmethod
    async def write_progress(self, record_id: int, blob: str) -> None:
        ...

    @abstractmethod
    async def delete_progress(self, record_id: int) -> bool:
        ...

    @abstractmethod
    async def list_pending_records(self, max_retries: int) -> list[DeaRecord]:
        ...

    @abstractmethod
    async def list_recent_records(self, since: datetime, max_retries: int) -> list[DeaRecord]:
        ...

    @abstractmethod
    async def save_validation_result(self, result: AddressValidationRecord) -> None:
        ...

    @abstractmethod
    async def mark_failed(self, record_id: int, error_message: str, processing_ms: int = 0) -> None:
        ...

    @abstractmethod
    async def increment_retry(self, record_id: int) -> None:
        ...

    @abstractmethod
    async def get_validation(self, record_id: int) -> Optional[AddressValidationRecord]:
        ...

    @abstractmethod
    async def validation_stats(self) -> dict[str, Any]:
        ...


class InMemoryRecordStore(RecordStore):
    def __init__(self, records: Iterable[DeaRecord] = ()) -> None:
        self.records: dict[int, DeaRecord] = {r.id: r for r in records}
        self.progress: dict[int, str] = {}
        self.validations: dict[int, AddressValidationRecord] = {}

    async def find_record_by_id(self, record_id: int) -> Optional[DeaRecord]:
        return self.records.get(record_id)

    async def update_record_fields(self, record_id: int, fields: dict[str, Any]) -> DeaRecord:
        record = self.records.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        updated = record.model_copy(update={**fields, "updated_at": utcnow()})
        self.records[record_id] = updated
        logger.debug("Registro {} actualizado: {}", record_id, sorted(fields))
        return updated

    async def read_progress(self, record_id: int) -> Optional[str]:
        return self.progress.get(record_id)

    async def write_progress(self, record_id: int, blob: str) -> None:
        self.progress[record_id] = blob

    async def delete_progress(self, record_id: int) -> bool:
        return self.progress.pop(record_id, None) is not None

    async def list_pending_records(self, max_retries: int) -> list[DeaRecord]:
        pending = []
        for record in self.records.values():
            validation = self.validations.get(record.id)
            if validation is None or (validation.needs_reprocessing and validation.retry_count < max_retries):
                pending.append(record)
        pending.sort(key=lambda r: (r.created_at, r.id))
        return pending

    async def list_recent_records(self, since: datetime, max_retries: int) -> list[DeaRecord]:
        recent = []
        for record in self.records.values():
            validation = self.validations.get(record.id)
            if record.created_at >= since or record.updated_at >= since:
                recent.append(record)
            elif validation is not None and validation.retry_count < max_retries and (
                validation.needs_reprocessing or validation.processed_at < since
            ):
                recent.append(record)
        recent.sort(key=lambda r: (r.created_at, r.id))
        return recent

    async def save_validation_result(self, result: AddressValidationRecord) -> None:
        self.validations[result.record_id] = result.model_copy(
            update={"needs_reprocessing": False, "error_message": None, "retry_count": 0}
        )

    async def mark_failed(self, record_id: int, error_message: str, processing_ms: int = 0) -> None:
        current = self.validations.get(record_id)
        if current is None:
            self.validations[record_id] = AddressValidationRecord(
                record_id=record_id,
                needs_reprocessing=True,
                error_message=error_message,
                retry_count=1,
                processing_ms=processing_ms,
            )
            return
        self.validations[record_id] = current.model_copy(
            update={
                "needs_reprocessing": True,
                "error_message": error_message,
                "retry_count": current.retry_count + 1,
                "processed_at": utcnow(),
            }
        )

    async def increment_retry(self, record_id: int) -> None:
        current = self.validations.get(record_id)
        if current is None:
            self.validations[record_id] = AddressValidationRecord(
                record_id=record_id, needs_reprocessing=True, retry_count=1
            )
            return
        self.validations[record_id] = current.model_copy(update={"retry_count": current.retry_count + 1})

    async def get_validation(self, record_id: int) -> Optional[AddressValidationRecord]:
        return self.validations.get(record_id)

    async def validation_stats(self) -> dict[str, Any]:
        processed = list(self.validations.values())
        breakdown = Counter(v.overall_status for v in processed if v.error_message is None)
        return {
            "total_records": len(self.records),
            "processed_records": len(processed),
            "pending_records": len(self.records) - len(processed),
            "needs_reprocessing": sum(1 for v in processed if v.needs_reprocessing),
            "with_errors": sum(1 for v in processed if v.error_message is not None),
            "status_breakdown": dict(breakdown),
        }


def load_records(
    path: Path,
    sheet_name: Optional[str] = None,
    columns: Optional[dict[str, str]] = None,
) -> list[DeaRecord]:
    mapper = columns or DEFAULT_RECORD_COLUMNS
    text_columns = [mapper[k] for k in ("street_number", "postal_code", "district") if k in mapper]
    df = read_table(path, sheet_name=sheet_name, dtype={c: str for c in text_columns})
    df = df.rename(columns={v: k for k, v in mapper.items() if v in df.columns})

    records: list[DeaRecord] = []
    for idx, row in enumerate(df.to_dict(orient="records"), start=1):
        cleaned = {key: clean_value(value) for key, value in row.items() if key in mapper}
        if not cleaned.get("street_name"):
            logger.warning("Fila {} sin nombre de vía, se omite", idx)
            continue
        cleaned["id"] = int(cleaned.get("id") or idx)
        records.append(DeaRecord(**cleaned))
    logger.info("Cargados {} registros DEA desde {}", len(records), path)
    return records
