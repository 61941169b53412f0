from __future__ import annotations


class MatcherError(Exception):
    ...


class ConfigError(MatcherError):
    ...


class RecordNotFoundError(MatcherError):
    def __init__(self, record_id: int) -> None:
        super().__init__(f"Registro DEA {record_id} no encontrado")
        self.record_id = record_id


class InvalidStepPayloadError(MatcherError):
    ...


class StepOrderError(MatcherError):
    def __init__(self, step_number: int, missing_step: int) -> None:
        super().__init__(
            f"No se puede ejecutar el paso {step_number}: debe completar el paso {missing_step} primero"
        )
        self.step_number = step_number
        self.missing_step = missing_step


class StepAlreadyCompletedError(MatcherError):
    ...


class OfficialAddressNotFoundError(MatcherError):
    ...
