"""Tests for configuration helpers."""

from statement_ingest.config import Settings, parse_comma_list


def test_parse_comma_list_defaults() -> None:
    assert parse_comma_list(None, ["a"]) == ["a"]


def test_parse_comma_list_accepts_list() -> None:
    assert parse_comma_list(["x", "y"], ["a"]) == ["x", "y"]


def test_parse_comma_list_splits_string() -> None:
    assert parse_comma_list("x, y, ,z", ["a"]) == ["x", "y", "z"]


def test_settings_defaults(monkeypatch) -> None:
    monkeypatch.delenv("STATEMENT_MIN_ROWS", raising=False)
    monkeypatch.delenv("CORS_ORIGINS", raising=False)
    monkeypatch.delenv("RECONCILIATION_CONFIG_PATH", raising=False)

    settings = Settings(_env_file=None)

    assert settings.statement_min_rows == 3
    assert settings.reconciliation_config_path is None
    assert settings.cors_origins == ["http://localhost:3000", "http://127.0.0.1:3000"]


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("STATEMENT_MIN_ROWS", "5")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("ENV", "staging")
    monkeypatch.delenv("ENVIRONMENT", raising=False)

    settings = Settings(_env_file=None)

    assert settings.statement_min_rows == 5
    assert settings.cors_origins == ["https://a.example", "https://b.example"]
    assert settings.environment == "staging"
