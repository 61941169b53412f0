from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional, Sequence

from loguru import logger

from .config import PreprocessConfig
from .models import AddressValidationRecord, ComprehensiveAddressValidation, DeaRecord, utcnow
from .storage import RecordStore
from .validation import AddressValidationService, used_strategies

TIMEOUT_MESSAGE = "Timeout de procesamiento"


@dataclass
class ProcessingStats:
    total_records: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    total_duration: float = 0.0
    errors: list[dict[str, Any]] = field(default_factory=list)
    global_error: Optional[str] = None

    @property
    def average_processing_time(self) -> float:
        processed = self.successful + self.failed
        return self.total_duration / processed if processed else 0.0

    def merge(self, other: "ProcessingStats") -> None:
        self.successful += other.successful
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors.extend(other.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_records": self.total_records,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "total_duration": round(self.total_duration, 3),
            "average_processing_time": round(self.average_processing_time, 3),
            "error_count": len(self.errors),
            "global_error": self.global_error,
        }


class AddressValidationPreprocessor:
    """Precalcula la validación de direcciones de los registros pendientes en lotes."""

    def __init__(
        self,
        validator: AddressValidationService,
        store: RecordStore,
        config: Optional[PreprocessConfig] = None,
    ) -> None:
        self.validator = validator
        self.store = store
        self.config = config or PreprocessConfig()

    async def process_all_pending(self) -> ProcessingStats:
        stats = ProcessingStats()
        started = time.perf_counter()
        try:
            records = await self.store.list_pending_records(self.config.max_retries)
            stats.total_records = len(records)
            logger.info("Iniciando procesamiento de {} registros DEA", len(records))
            await self._run_batches(records, self.config.batch_size, self.config.batch_pause_seconds, stats)
        except Exception as exc:
            logger.exception("Error en procesamiento masivo")
            stats.global_error = str(exc) or type(exc).__name__
        stats.total_duration = time.perf_counter() - started
        return stats

    async def process_recent(self) -> ProcessingStats:
        stats = ProcessingStats()
        started = time.perf_counter()
        try:
            since = utcnow() - timedelta(hours=self.config.recent_window_hours)
            records = await self.store.list_recent_records(since, self.config.max_retries)
            stats.total_records = len(records)
            logger.info("Procesamiento incremental: {} registros recientes", len(records))
            batch_size = min(self.config.batch_size, self.config.incremental_batch_size)
            await self._run_batches(records, batch_size, self.config.incremental_pause_seconds, stats)
        except Exception as exc:
            logger.exception("Error en procesamiento incremental")
            stats.global_error = str(exc) or type(exc).__name__
        stats.total_duration = time.perf_counter() - started
        return stats

    async def validation_stats(self) -> dict[str, Any]:
        return await self.store.validation_stats()

    async def _run_batches(
        self, records: Sequence[DeaRecord], batch_size: int, pause: float, stats: ProcessingStats
    ) -> None:
        if not records:
            logger.info("No hay registros que procesar")
            return
        size = max(1, batch_size)
        total_batches = (len(records) + size - 1) // size
        for start in range(0, len(records), size):
            batch = records[start : start + size]
            number = start // size + 1
            logger.info("Procesando lote {}/{} ({} registros)", number, total_batches, len(batch))
            stats.merge(await self.process_batch(batch, number))
            if start + size < len(records) and pause > 0:
                await asyncio.sleep(pause)

    async def process_batch(self, records: Sequence[DeaRecord], batch_number: int = 1) -> ProcessingStats:
        batch_stats = ProcessingStats(total_records=len(records))
        runnable = []
        for record in records:
            if record.street_name.strip():
                runnable.append(record)
            else:
                batch_stats.skipped += 1
                logger.warning("DEA {} sin nombre de vía, se omite", record.id)

        results = await asyncio.gather(
            *(self.process_record_with_retry(record) for record in runnable), return_exceptions=True
        )
        for record, result in zip(runnable, results):
            if isinstance(result, BaseException):
                batch_stats.failed += 1
                message = self._error_message(result)
                batch_stats.errors.append({"record_id": record.id, "error": message})
                logger.warning("DEA {}: {}", record.id, message)
            else:
                batch_stats.successful += 1
                logger.debug("DEA {}: {}ms", record.id, result)

        logger.info(
            "Lote {}: {} exitosos, {} fallidos, {} omitidos",
            batch_number,
            batch_stats.successful,
            batch_stats.failed,
            batch_stats.skipped,
        )
        return batch_stats

    async def process_record_with_retry(self, record: DeaRecord) -> int:
        existing = await self.store.get_validation(record.id)
        already_used = existing.retry_count if existing is not None else 0
        attempts = max(1, self.config.max_retries - already_used)

        for attempt in range(attempts):
            try:
                return await self.process_record(record)
            except Exception as exc:
                if attempt == attempts - 1:
                    await self.store.mark_failed(record.id, self._error_message(exc))
                    raise
                await self.store.increment_retry(record.id)
                await asyncio.sleep(self.config.retry_backoff_seconds * (attempt + 1))
        raise RuntimeError("Se agotaron todos los reintentos")

    async def process_record(self, record: DeaRecord) -> int:
        started = time.perf_counter()
        validation = await asyncio.wait_for(
            self.validator.validate_query(record.to_query()), timeout=self.config.timeout_seconds
        )
        processing_ms = int((time.perf_counter() - started) * 1000)
        await self.store.save_validation_result(self.build_result(record.id, validation, processing_ms))
        return processing_ms

    @staticmethod
    def build_result(
        record_id: int, validation: ComprehensiveAddressValidation, processing_ms: int
    ) -> AddressValidationRecord:
        return AddressValidationRecord(
            record_id=record_id,
            suggestions=validation.search_result.suggestions,
            validation_details=validation.validation_details,
            overall_status=validation.overall_status,
            recommended_actions=validation.recommended_actions,
            strategies_used=used_strategies(validation),
            processing_ms=processing_ms,
        )

    @staticmethod
    def _error_message(exc: BaseException) -> str:
        if isinstance(exc, asyncio.TimeoutError):
            return TIMEOUT_MESSAGE
        return str(exc) or type(exc).__name__
