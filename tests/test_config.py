import pytest

from madrid_matcher.config import AppConfig, SearchConfig, load_config
from madrid_matcher.exceptions import ConfigError


def test_defaults():
    cfg = AppConfig()
    assert cfg.search.fuzzy_threshold == 0.6
    assert cfg.search.coordinate_tolerance_meters == 100.0
    assert cfg.workflow.auto_skip_distance_meters == 50.0
    assert cfg.preprocess.batch_size == 25
    assert cfg.columns.gazetteer["postal_code"] == "codigo_postal"


def test_load_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "gazetteer_file: callejero.csv\n"
        f"output_file: {tmp_path / 'salida' / 'resultado.csv'}\n"
        "search:\n"
        "  fuzzy_threshold: 0.7\n"
        "preprocess:\n"
        "  max_retries: 5\n",
        encoding="utf-8",
    )
    cfg = load_config(path)
    assert cfg.search.fuzzy_threshold == 0.7
    assert cfg.search.max_results == 10
    assert cfg.preprocess.max_retries == 5
    assert (tmp_path / "salida").is_dir()


def test_invalid_values_are_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("search:\n  fuzzy_threshold: 1.5\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)
    with pytest.raises(ValueError):
        SearchConfig(geographic_radius_meters=0)


def test_missing_config_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "no_existe.yaml")
