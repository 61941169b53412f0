import pandas as pd
import pytest

from madrid_matcher.config import SearchConfig
from madrid_matcher.exceptions import ConfigError
from madrid_matcher.gazetteer import InMemoryGazetteer, NumberRange, load_gazetteer, records_from_frame
from madrid_matcher.models import AddressQuery
from madrid_matcher.similarity import haversine_meters

from conftest import make_address


@pytest.mark.asyncio
async def test_search_exact_returns_full_confidence_ordered_by_number(gazetteer):
    results = await gazetteer.search_exact(AddressQuery(street_type="Calle", street_name="Gran Vía"))
    assert [c.record.number for c in results] == [1, 2, 3, 12]
    assert all(c.confidence == 1.0 and c.match_type == "exact" for c in results)


@pytest.mark.asyncio
async def test_search_exact_matches_article_stripped_name_and_type_alias(gazetteer):
    results = await gazetteer.search_exact(AddressQuery(street_type="Pso", street_name="Chopera"))
    assert [c.record.number for c in results] == [2, 6, 10]


@pytest.mark.asyncio
async def test_search_exact_filters_by_number_and_type(gazetteer):
    found = await gazetteer.search_exact(
        AddressQuery(street_type="Calle", street_name="Gran Vía", street_number="3")
    )
    assert [c.record.id for c in found] == [3]
    assert await gazetteer.search_exact(AddressQuery(street_type="Avenida", street_name="Gran Vía")) == []


@pytest.mark.asyncio
async def test_search_fuzzy_applies_number_bonus_and_orders_by_proximity(gazetteer):
    results = await gazetteer.search_fuzzy(AddressQuery(street_name="Gran Bia", street_number="2"))
    assert [c.record.number for c in results] == [2, 1, 3, 12]
    assert results[0].confidence == pytest.approx(1.0)
    assert results[1].confidence == pytest.approx(0.875)
    assert all(c.match_type == "fuzzy" for c in results)


@pytest.mark.asyncio
async def test_search_fuzzy_respects_threshold_and_max_results(gazetteer_records):
    store = InMemoryGazetteer(gazetteer_records, SearchConfig(max_results=2))
    results = await store.search_fuzzy(AddressQuery(street_name="Gran Bia"))
    assert len(results) == 2
    assert await store.search_fuzzy(AddressQuery(street_name="Gran Bia"), threshold=0.9) == []


@pytest.mark.asyncio
async def test_search_geo_radius_is_inclusive():
    record = make_address(1, 100, "CALLE", "GRAN VIA", "Gran Vía", 1, "28013", 1, 40.4200, -3.7025)
    store = InMemoryGazetteer([record])
    lat, lon = 40.4210, -3.7025
    distance = haversine_meters(lat, lon, record.latitude, record.longitude)

    inside = await store.search_geo(lat, lon, radius_meters=distance)
    assert [c.record.id for c in inside] == [1]
    assert inside[0].confidence == pytest.approx(0.0)
    assert inside[0].distance_meters == pytest.approx(distance)
    assert await store.search_geo(lat, lon, radius_meters=distance - 1) == []


@pytest.mark.asyncio
async def test_search_geo_orders_by_distance(gazetteer):
    results = await gazetteer.search_geo(40.4200, -3.7025, radius_meters=500)
    distances = [c.distance_meters for c in results]
    assert distances == sorted(distances)
    assert results[0].record.id == 1
    assert results[0].confidence == pytest.approx(1.0)
    assert all(c.record.via_id in (100, 400) for c in results)


@pytest.mark.asyncio
async def test_number_in_range_uses_parity(gazetteer):
    assert await gazetteer.number_in_range(100, 1, 3)
    assert not await gazetteer.number_in_range(100, 1, 5)
    assert await gazetteer.number_in_range(100, 1, 8)
    assert not await gazetteer.number_in_range(100, 1, 14)
    assert await gazetteer.number_in_range(999, 1, 7)


def test_number_range_without_parity_data():
    known = NumberRange()
    known.add(4)
    assert known.contains(4)
    assert not known.contains(3)


@pytest.mark.asyncio
async def test_find_by_via_and_number(gazetteer):
    assert [c.record.number for c in await gazetteer.find_by_via_and_number(200)] == [2, 6, 10]
    assert [c.record.id for c in await gazetteer.find_by_via_and_number(200, 6)] == [6]


class BrokenGazetteer(InMemoryGazetteer):
    def _exact(self, query):
        raise RuntimeError("conexión perdida")

    def _fuzzy(self, query, threshold):
        raise RuntimeError("conexión perdida")

    def _geo(self, latitude, longitude, radius):
        raise RuntimeError("conexión perdida")


@pytest.mark.asyncio
async def test_lookup_failures_return_empty_lists(gazetteer_records):
    broken = BrokenGazetteer(gazetteer_records)
    query = AddressQuery(street_type="Calle", street_name="Gran Vía")
    assert await broken.search_exact(query) == []
    assert await broken.search_fuzzy(query) == []
    assert await broken.search_geo(40.42, -3.70) == []


def test_load_gazetteer_from_csv(tmp_path):
    path = tmp_path / "callejero.csv"
    pd.DataFrame(
        [
            {
                "id": 1, "via_id": 100, "codigo_via": 1000, "clase_via": "CALLE", "nombre_via": "GRAN VIA",
                "nombre_via_acentos": "Gran Vía", "numero": 1, "codigo_postal": "28013", "distrito": 1,
                "distrito_nombre": "Centro", "barrio": "Sol", "latitud": 40.42, "longitud": -3.7025,
            },
            {
                "id": 2, "via_id": 100, "codigo_via": 1000, "clase_via": "CALLE", "nombre_via": "GRAN VIA",
                "nombre_via_acentos": "Gran Vía", "numero": 2, "codigo_postal": "28013", "distrito": 1,
                "distrito_nombre": "Centro", "barrio": "Sol", "latitud": None, "longitud": None,
            },
        ]
    ).to_csv(path, index=False)

    store = load_gazetteer(path)
    assert len(store.records) == 1
    record = store.records[0]
    assert record.postal_code == "28013"
    assert record.number == 1
    assert record.street_name_accents == "Gran Vía"
    assert record.neighborhood == "Sol"


def test_records_from_frame_falls_back_to_plain_name():
    df = pd.DataFrame(
        [{"via_id": 5, "clase_via": "PLAZA", "nombre_via": "MAYOR", "numero": "3 BIS", "latitud": 40.41, "longitud": -3.70}]
    )
    [record] = records_from_frame(df)
    assert record.street_name_accents == "MAYOR"
    assert record.number == 3
    assert record.id == 1


def test_records_from_frame_requires_via_id_column():
    df = pd.DataFrame(
        [
            {"clase_via": "CALLE", "nombre_via": "GRAN VIA", "numero": 1, "latitud": 40.42, "longitud": -3.70},
            {"clase_via": "CALLE", "nombre_via": "ALCALA", "numero": 1, "latitud": 40.418, "longitud": -3.697},
        ]
    )
    with pytest.raises(ConfigError, match="via_id"):
        records_from_frame(df)


def test_records_from_frame_rejects_row_without_via_id():
    df = pd.DataFrame(
        [
            {"via_id": 100, "clase_via": "CALLE", "nombre_via": "GRAN VIA", "numero": 1, "latitud": 40.42, "longitud": -3.70},
            {"via_id": None, "clase_via": "CALLE", "nombre_via": "ALCALA", "numero": 1, "latitud": 40.418, "longitud": -3.697},
        ]
    )
    with pytest.raises(ConfigError, match="Fila 2"):
        records_from_frame(df)


def test_distinct_via_ids_keep_streets_apart():
    df = pd.DataFrame(
        [
            {"via_id": 100, "clase_via": "CALLE", "nombre_via": "GRAN VIA", "numero": 1, "latitud": 40.42, "longitud": -3.70},
            {"via_id": 400, "clase_via": "CALLE", "nombre_via": "ALCALA", "numero": 1, "latitud": 40.418, "longitud": -3.697},
        ]
    )
    gazetteer = InMemoryGazetteer(records_from_frame(df))
    assert len(gazetteer.streets) == 2
