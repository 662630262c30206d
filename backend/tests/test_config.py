import importlib

import pytest

from setrank import config


@pytest.fixture()
def reload_config(monkeypatch):
    def _reload(**env):
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        return importlib.reload(config)

    yield _reload
    monkeypatch.undo()
    importlib.reload(config)


@pytest.mark.parametrize(
    "raw,expected",
    [(None, "/api"), ("", "/api"), ("api", "/api"), ("/v1/", "/v1"), ("/", "/")],
)
def test_api_prefix_is_canonicalised(raw, expected):
    assert config._canon_prefix(raw) == expected


def test_defaults(monkeypatch, reload_config):
    for key in (
        "ELO_K_FACTOR",
        "RANKING_MAX_COMPARISONS",
        "RANKING_QUEUE_SEED",
        "RANKING_SESSION_TTL_SECONDS",
        "RANKING_STEP_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(key, raising=False)
    cfg = reload_config()
    assert cfg.ELO_K_FACTOR == 32.0
    assert cfg.RANKING_MAX_COMPARISONS == 5
    assert cfg.RANKING_QUEUE_SEED is None
    assert cfg.RANKING_SESSION_TTL_SECONDS == 1800.0
    assert cfg.RANKING_STEP_TIMEOUT_SECONDS == 5.0


def test_overrides_are_read_from_environment(reload_config):
    cfg = reload_config(
        ELO_K_FACTOR="24", RANKING_MAX_COMPARISONS="8", RANKING_QUEUE_SEED="0"
    )
    assert cfg.ELO_K_FACTOR == 24.0
    assert cfg.RANKING_MAX_COMPARISONS == 8
    assert cfg.RANKING_QUEUE_SEED == 0


def test_invalid_values_fall_back_with_warning(reload_config, caplog):
    cfg = reload_config(ELO_K_FACTOR="0", RANKING_MAX_COMPARISONS="lots")
    assert cfg.ELO_K_FACTOR == 32.0
    assert cfg.RANKING_MAX_COMPARISONS == 5
    assert "ELO_K_FACTOR must be >= 1.0" in caplog.text
    assert "RANKING_MAX_COMPARISONS is not a valid integer" in caplog.text
