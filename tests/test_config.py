from __future__ import annotations

from pathlib import Path

import pytest

from barrel_volume.config import DEFAULT_MODELS, load_analyzer_settings

_KEYS = ("BARREL_BACKEND", "BARREL_MODEL", "OPEN_ROUTER_API_KEY", "OPENROUTER_API_KEY", "OPENAI_API_KEY", "OPENAI_BASE_URL", "BARREL_TIMEOUT")


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in _KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_env(tmp_path: Path) -> None:
    settings = load_analyzer_settings(str(tmp_path))

    assert settings.backend == "openrouter"
    assert settings.model_name == DEFAULT_MODELS["openrouter"]
    assert settings.api_key is None


def test_dotenv_is_found_from_subdirectory(tmp_path: Path) -> None:
    (tmp_path / ".env").write_text(
        'BARREL_BACKEND=openai\nOPENAI_API_KEY="sk-from-file"\nBARREL_TIMEOUT=30\n',
        encoding="utf-8",
    )
    sub = tmp_path / "src"
    sub.mkdir()

    settings = load_analyzer_settings(str(sub))

    assert settings.backend == "openai"
    assert settings.api_key == "sk-from-file"
    assert settings.timeout_seconds == 30


def test_environment_wins_over_dotenv(tmp_path: Path, monkeypatch) -> None:
    (tmp_path / ".env").write_text("OPEN_ROUTER_API_KEY=from-file\n", encoding="utf-8")
    monkeypatch.setenv("OPEN_ROUTER_API_KEY", "from-env")
    monkeypatch.setenv("BARREL_BACKEND", "carrier-pigeon")

    settings = load_analyzer_settings(str(tmp_path), model_name="custom/model")

    assert settings.backend == "openrouter"
    assert settings.api_key == "from-env"
    assert settings.model_name == "custom/model"
