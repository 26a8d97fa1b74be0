"""Load settings.yaml into typed dataclasses. Reports API key availability at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from llm_dispatch.providers.capabilities import Capabilities
from llm_dispatch.usage import ModelPricing

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class RoleConfig:
    provider: str | None
    model: str | None
    max_tokens: int
    temperature: float | None = None
    base_url: str | None = None


@dataclass
class ProviderConfig:
    name: str
    sdk: str
    api_key_env: str | None
    timeout_sec: int
    requires_api_key: bool = True
    base_url: str | None = None
    capabilities: Capabilities = field(default_factory=Capabilities)


@dataclass
class RetryConfig:
    max_retries: int = 2
    base_delay_ms: int = 1000


@dataclass
class StreamingConfig:
    max_buffer_bytes: int = 1024 * 1024
    flush_wait_ms: int = 100
    timeout_sec: int = 180
    usage_timeout_ms: int = 1000


@dataclass
class AppConfig:
    roles: dict[str, RoleConfig]
    providers: dict[str, ProviderConfig]
    retry: RetryConfig = field(default_factory=RetryConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    pricing: dict[str, dict[str, ModelPricing]] = field(default_factory=dict)
    response_language: str = "English"
    available_providers: set[str] = field(default_factory=set)


def _load_role(raw: dict) -> RoleConfig:
    temperature = raw.get("temperature")
    return RoleConfig(
        provider=raw.get("provider"),
        model=raw.get("model"),
        max_tokens=int(raw.get("max_tokens", 4096)),
        temperature=float(temperature) if temperature is not None else None,
        base_url=raw.get("base_url"),
    )


def _load_provider(name: str, raw: dict) -> ProviderConfig:
    caps_raw = raw.get("capabilities", {}) or {}
    return ProviderConfig(
        name=name,
        sdk=str(raw["sdk"]),
        api_key_env=raw.get("api_key_env"),
        timeout_sec=int(raw.get("timeout_sec", 120)),
        requires_api_key=bool(raw.get("requires_api_key", True)),
        base_url=raw.get("base_url"),
        capabilities=Capabilities(
            supports_temperature=bool(caps_raw.get("supports_temperature", True)),
            needs_explicit_json_schema=bool(caps_raw.get("needs_explicit_json_schema", False)),
            supports_structured_output=bool(caps_raw.get("supports_structured_output", True)),
        ),
    )


def _load_pricing(raw: dict) -> dict[str, dict[str, ModelPricing]]:
    pricing: dict[str, dict[str, ModelPricing]] = {}
    for provider_name, models_raw in raw.items():
        pricing[provider_name] = {
            model: ModelPricing(
                input_per_1m=float(costs.get("input", 0)),
                output_per_1m=float(costs.get("output", 0)),
                currency=str(costs.get("currency", "USD")),
            )
            for model, costs in (models_raw or {}).items()
            if costs is not None
        }
    return pricing


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs missing API keys but does not raise; roles whose backend has no
    key fail over at request time.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    roles = {name: _load_role(role_raw or {}) for name, role_raw in (raw.get("roles") or {}).items()}

    providers: dict[str, ProviderConfig] = {}
    available_providers: set[str] = set()
    for provider_name, provider_raw in (raw.get("providers") or {}).items():
        provider_cfg = _load_provider(provider_name, provider_raw)
        providers[provider_name] = provider_cfg

        if not provider_cfg.requires_api_key:
            available_providers.add(provider_name)
            continue
        api_key = os.environ.get(provider_cfg.api_key_env or "", "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s — set %s in .env",
                provider_name,
                provider_cfg.api_key_env,
            )

    retry_raw = raw.get("retry") or {}
    streaming_raw = raw.get("streaming") or {}
    defaults = StreamingConfig()

    return AppConfig(
        roles=roles,
        providers=providers,
        retry=RetryConfig(
            max_retries=int(retry_raw.get("max_retries", 2)),
            base_delay_ms=int(retry_raw.get("base_delay_ms", 1000)),
        ),
        streaming=StreamingConfig(
            max_buffer_bytes=int(streaming_raw.get("max_buffer_bytes", defaults.max_buffer_bytes)),
            flush_wait_ms=int(streaming_raw.get("flush_wait_ms", defaults.flush_wait_ms)),
            timeout_sec=int(streaming_raw.get("timeout_sec", defaults.timeout_sec)),
            usage_timeout_ms=int(streaming_raw.get("usage_timeout_ms", defaults.usage_timeout_ms)),
        ),
        pricing=_load_pricing(raw.get("pricing") or {}),
        response_language=str(raw.get("response_language", "English")),
        available_providers=available_providers,
    )
