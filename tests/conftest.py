"""Fixtures compartidos: un callejero reducido de Madrid y registros DEA de ejemplo."""

import pytest

from madrid_matcher.config import PreprocessConfig, SearchConfig, WorkflowConfig
from madrid_matcher.gazetteer import InMemoryGazetteer
from madrid_matcher.models import DeaRecord, GazetteerRecord
from madrid_matcher.storage import InMemoryRecordStore
from madrid_matcher.validation import AddressValidationService
from madrid_matcher.workflow import StepValidationService

GRAN_VIA_1 = (40.4200, -3.7025)
CHOPERA_2 = (40.3950, -3.6990)


def make_address(record_id, via_id, street_class, name, accents, number, postal, district, lat, lon):
    return GazetteerRecord(
        id=record_id,
        via_id=via_id,
        via_code=via_id * 10,
        street_class=street_class,
        street_name=name,
        street_name_accents=accents,
        number=number,
        postal_code=postal,
        district=district,
        district_name="",
        latitude=lat,
        longitude=lon,
    )


@pytest.fixture
def gazetteer_records():
    return [
        make_address(1, 100, "CALLE", "GRAN VIA", "Gran Vía", 1, "28013", 1, *GRAN_VIA_1),
        make_address(2, 100, "CALLE", "GRAN VIA", "Gran Vía", 2, "28013", 1, 40.4202, -3.7030),
        make_address(3, 100, "CALLE", "GRAN VIA", "Gran Vía", 3, "28013", 1, 40.4203, -3.7035),
        make_address(4, 100, "CALLE", "GRAN VIA", "Gran Vía", 12, "28013", 1, 40.4205, -3.7050),
        make_address(5, 200, "PASEO", "DE LA CHOPERA", "de la Chopera", 2, "28045", 2, *CHOPERA_2),
        make_address(6, 200, "PASEO", "DE LA CHOPERA", "de la Chopera", 6, "28045", 2, 40.3955, -3.6992),
        make_address(7, 200, "PASEO", "DE LA CHOPERA", "de la Chopera", 10, "28045", 2, 40.3960, -3.6994),
        make_address(8, 300, "AVENIDA", "DE LA ALBUFERA", "de la Albufera", 5, "28038", 13, 40.3980, -3.6650),
        make_address(9, 400, "CALLE", "DE ALCALA", "de Alcalá", 1, "28014", 1, 40.4185, -3.7010),
        make_address(10, 400, "CALLE", "DE ALCALA", "de Alcalá", 100, "28009", 4, 40.4230, -3.6800),
    ]


@pytest.fixture
def search_config():
    return SearchConfig()


@pytest.fixture
def gazetteer(gazetteer_records, search_config):
    return InMemoryGazetteer(gazetteer_records, search_config)


@pytest.fixture
def validator(gazetteer, search_config):
    return AddressValidationService(gazetteer, search_config)


@pytest.fixture
def dea_records():
    return [
        # Coincide en todo con el callejero
        DeaRecord(
            id=1,
            street_type="Calle",
            street_name="Gran Vía",
            street_number="1",
            postal_code="28013",
            district="1. Centro",
            latitude=GRAN_VIA_1[0],
            longitude=GRAN_VIA_1[1],
        ),
        # Vía correcta, pero código postal, distrito y coordenadas erróneos
        DeaRecord(
            id=2,
            street_type="Paseo",
            street_name="de la Chopera",
            street_number="2",
            postal_code="28012",
            district="Arganzuela",
            latitude=40.3990,
            longitude=-3.6990,
        ),
        # Vía inexistente y sin coordenadas
        DeaRecord(id=3, street_type="Calle", street_name="Xyz", street_number="5", postal_code="28001"),
    ]


@pytest.fixture
def store(dea_records):
    return InMemoryRecordStore(dea_records)


@pytest.fixture
def workflow(validator, store):
    return StepValidationService(validator, store, WorkflowConfig())


@pytest.fixture
def fast_preprocess_config():
    return PreprocessConfig(
        batch_size=2,
        incremental_batch_size=2,
        max_retries=2,
        timeout_seconds=5.0,
        batch_pause_seconds=0.0,
        incremental_pause_seconds=0.0,
        retry_backoff_seconds=0.0,
    )
