# config.py
import os
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple


DEFAULT_PROXIES = (
    "https://corsproxy.io/?",
    "https://api.codetabs.com/v1/proxy?quest=",
    "https://thingproxy.freeboard.io/fetch/",
)
DEFAULT_SCRAPER_PROXIES = ("https://api.allorigins.win/get?url=",)


class ConfigError(ValueError):
    """Raised when an environment variable holds an unusable value."""


def _env_int(env: Dict[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _env_list(env: Dict[str, str], name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = env.get(name)
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _normalize_model_tag(tag: str) -> str:
    t = (tag or "").strip().lower()
    if "/" in t:
        t = t.split("/")[-1]
    return t


@dataclass(frozen=True)
class FetchChainConfig:
    proxy_order: Tuple[str, ...] = DEFAULT_PROXIES
    timeout_ms: int = 10000
    min_content_length: int = 50
    page_max_chars: int = 8000
    extract_max_chars: int = 3000
    # Raw proxy bodies shorter than this are rejected before extraction
    min_raw_length: int = 0

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(frozen=True)
class LoopConfig:
    # Hard cap on gateway invocations per run
    max_iterations: int = 5
    # Tool schemas are offered while iteration <= tool_iterations
    tool_iterations: int = 3
    search_max_results: int = 3


@dataclass(frozen=True)
class Settings:
    ollama_host: str = "https://ollama.com"
    api_key: Optional[str] = None
    default_model: str = "FireFlies:latest"
    vision_model: str = "qwen3-vl:235b-cloud"
    cloud_suffix: str = "-cloud"
    non_tool_models: FrozenSet[str] = frozenset()
    log_level: str = "INFO"
    fetch: FetchChainConfig = field(default_factory=FetchChainConfig)
    scraper: FetchChainConfig = field(
        default_factory=lambda: FetchChainConfig(proxy_order=DEFAULT_SCRAPER_PROXIES, min_content_length=51, min_raw_length=100)
    )
    loop: LoopConfig = field(default_factory=LoopConfig)

    def model_supports_tools(self, tag: str) -> bool:
        return _normalize_model_tag(tag) not in self.non_tool_models


def load_settings(env: Optional[Dict[str, str]] = None) -> Settings:
    """Build Settings from the environment (or an explicit mapping in tests)."""
    env = dict(os.environ if env is None else env)

    max_iterations = _env_int(env, "MAX_TOOL_ITERATIONS", 5, minimum=1)
    tool_iterations = _env_int(env, "TOOL_ITERATIONS", 3, minimum=0)
    if tool_iterations > max_iterations:
        raise ConfigError("TOOL_ITERATIONS cannot exceed MAX_TOOL_ITERATIONS")

    fetch = FetchChainConfig(
        proxy_order=_env_list(env, "FETCH_PROXIES", DEFAULT_PROXIES),
        timeout_ms=_env_int(env, "FETCH_TIMEOUT_MS", 10000, minimum=1),
        min_content_length=_env_int(env, "FETCH_MIN_CONTENT_LENGTH", 50),
        page_max_chars=_env_int(env, "FETCH_MAX_CHARS", 8000, minimum=1),
        extract_max_chars=_env_int(env, "EXTRACT_MAX_CHARS", 3000, minimum=1),
    )
    # The scraper wants a raw page of at least 100 chars and more than 50 chars of text
    scraper = FetchChainConfig(
        proxy_order=_env_list(env, "SCRAPER_PROXIES", DEFAULT_SCRAPER_PROXIES),
        timeout_ms=fetch.timeout_ms,
        min_content_length=fetch.min_content_length + 1,
        page_max_chars=fetch.extract_max_chars,
        extract_max_chars=fetch.extract_max_chars,
        min_raw_length=100,
    )

    non_tool = {
        _normalize_model_tag(part)
        for part in env.get("NON_TOOL_MODELS", "").split(",")
        if part.strip()
    }

    return Settings(
        ollama_host=(env.get("OLLAMA_HOST") or "https://ollama.com").rstrip("/"),
        api_key=env.get("OLLAMA_API_KEY") or None,
        default_model=env.get("DEFAULT_MODEL") or "FireFlies:latest",
        vision_model=env.get("VISION_MODEL") or "qwen3-vl:235b-cloud",
        cloud_suffix=env.get("CLOUD_MODEL_SUFFIX", "-cloud"),
        non_tool_models=frozenset(non_tool),
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        fetch=fetch,
        scraper=scraper,
        loop=LoopConfig(
            max_iterations=max_iterations,
            tool_iterations=tool_iterations,
            search_max_results=_env_int(env, "SEARCH_MAX_RESULTS", 3, minimum=1),
        ),
    )
