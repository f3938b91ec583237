import os
from dataclasses import dataclass
from typing import Dict, Optional

from dotenv import dotenv_values

from .logging import get_logger

log = get_logger("config")

BACKENDS = ("openrouter", "openai")
DEFAULT_BACKEND = "openrouter"
DEFAULT_MODELS = {
    "openrouter": "google/gemini-2.5-pro",
    "openai": "gpt-4o",
}
DEFAULT_TIMEOUT_SECONDS = 180


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    This makes running tools from subdirectories (e.g., `src/`) still find
    the repository-level `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Read the nearest .env into a mapping without mutating os.environ."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    try:
        raw = dotenv_values(path, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        log.warning(f"Failed reading .env: {e}")
        return {}
    env = {k: v.strip() for k, v in raw.items() if v is not None}
    log.debug(f"Loaded {len(env)} key(s) from .env at {path}")
    return env


def _lookup(env: Dict[str, str], *names: str) -> Optional[str]:
    for name in names:
        v = os.environ.get(name)
        if v and v.strip():
            return v.strip()
    for name in names:
        v = env.get(name) or env.get(name.lower())
        if v:
            return v
    return None


@dataclass(frozen=True)
class AnalyzerSettings:
    """Everything the vision client needs to talk to its backend."""

    backend: str
    model_name: str
    api_key: Optional[str]
    base_url: Optional[str] = None
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS


def load_analyzer_settings(
    dotenv_dir: Optional[str] = None,
    *,
    backend: Optional[str] = None,
    model_name: Optional[str] = None,
) -> AnalyzerSettings:
    """Resolve backend, model and credential from arguments, env and .env.

    A missing API key is not an error here; the extraction stage reports it
    so the failure is attributed to the stage that needed it.
    """
    env = _read_dotenv(dotenv_dir or os.getcwd())
    chosen = (backend or _lookup(env, "BARREL_BACKEND") or DEFAULT_BACKEND).strip().lower()
    if chosen not in BACKENDS:
        log.warning(f"Unknown BARREL_BACKEND={chosen!r}; defaulting to '{DEFAULT_BACKEND}'")
        chosen = DEFAULT_BACKEND
    model = (model_name or _lookup(env, "BARREL_MODEL") or DEFAULT_MODELS[chosen]).strip()
    if chosen == "openai":
        api_key = _lookup(env, "OPENAI_API_KEY")
        base_url = _lookup(env, "OPENAI_BASE_URL")
    else:
        api_key = _lookup(env, "OPEN_ROUTER_API_KEY", "OPENROUTER_API_KEY")
        base_url = None
    timeout_raw = _lookup(env, "BARREL_TIMEOUT")
    timeout = DEFAULT_TIMEOUT_SECONDS
    if timeout_raw:
        try:
            timeout = max(1, int(timeout_raw))
        except ValueError:
            log.warning(f"BARREL_TIMEOUT={timeout_raw!r} is not an integer; using {DEFAULT_TIMEOUT_SECONDS}s")
    log.debug(f"Analyzer settings: backend={chosen} model={model} key={'set' if api_key else 'missing'}")
    return AnalyzerSettings(
        backend=chosen,
        model_name=model,
        api_key=api_key,
        base_url=base_url,
        timeout_seconds=timeout,
    )
