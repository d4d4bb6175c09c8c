import os

from gateway import load_env_file, parse_env_line
from gateway.config import (
    DEFAULT_ALLOWED_ORIGINS,
    SCOPE_FEEDBACK,
    SCOPE_TEXT,
    load_settings,
    parse_origins,
)


def test_defaults_from_empty_environment():
    settings = load_settings({})
    assert settings.allowed_origins == DEFAULT_ALLOWED_ORIGINS
    assert settings.groq_api_key == ""
    assert settings.limit_for(SCOPE_FEEDBACK).max_requests == 10
    assert settings.limit_for(SCOPE_FEEDBACK).window_ms == 60_000
    assert settings.prune_probability == 0.01


def test_environment_overrides():
    settings = load_settings(
        {
            "ALLOWED_ORIGINS": "https://a.example/, https://b.example,https://a.example",
            "GROQ_API_KEY": " key ",
            "AI_RATE_LIMIT_MAX": "5",
            "AI_RATE_LIMIT_WINDOW_MS": "1000",
            "VIDEO_TIMEOUT_SECS": "30",
        }
    )
    assert settings.allowed_origins == ("https://a.example", "https://b.example")
    assert settings.groq_api_key == "key"
    assert settings.limit_for(SCOPE_TEXT).max_requests == 5
    assert settings.limit_for(SCOPE_TEXT).window_ms == 1000
    assert settings.video_timeout_secs == 30.0


def test_bad_numbers_fall_back_to_defaults():
    settings = load_settings(
        {
            "FEEDBACK_RATE_LIMIT_MAX": "lots",
            "FEEDBACK_RATE_LIMIT_WINDOW_MS": "-5",
            "RATE_LIMIT_PRUNE_PROBABILITY": "7",
        }
    )
    assert settings.limit_for(SCOPE_FEEDBACK).max_requests == 10
    assert settings.limit_for(SCOPE_FEEDBACK).window_ms == 60_000
    assert settings.prune_probability == 0.01


def test_blank_origin_list_means_defaults():
    assert parse_origins("  ") == DEFAULT_ALLOWED_ORIGINS
    assert parse_origins(" , ") == DEFAULT_ALLOWED_ORIGINS


def test_env_line_parsing():
    assert parse_env_line("GROQ_API_KEY=abc") == ("GROQ_API_KEY", "abc")
    assert parse_env_line('export WEB3FORMS_ACCESS_KEY = "k=v" ') == ("WEB3FORMS_ACCESS_KEY", "k=v")
    assert parse_env_line("# COMMENTED=1") is None
    assert parse_env_line("   ") is None
    assert parse_env_line("NO_EQUALS") is None


def test_env_file_never_overrides_real_environment(tmp_path, monkeypatch):
    env_file = tmp_path / ".env"
    env_file.write_text("GATEWAY_TEST_A=from-file\nGATEWAY_TEST_B='quoted'\n", encoding="utf-8")
    monkeypatch.setenv("GATEWAY_TEST_A", "from-env")
    monkeypatch.delenv("GATEWAY_TEST_B", raising=False)
    load_env_file(env_file)
    assert os.environ["GATEWAY_TEST_A"] == "from-env"
    assert os.environ["GATEWAY_TEST_B"] == "quoted"
    os.environ.pop("GATEWAY_TEST_B")
    load_env_file(tmp_path / "missing.env")
