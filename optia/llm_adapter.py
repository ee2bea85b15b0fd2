"""
LLM Adapter for OPT-IA.

Unified text-generation interface over the model providers the oracle can use:
OpenAI-compatible APIs, Gemini, local Ollama, and a rule-based degraded mode.
Profiles live in config/model.yaml (config/local_model.yaml wins when present).
"""
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import httpx
import yaml

from optia.exceptions import (
    ConfigError,
    LLMAuthError,
    LLMConnectionError,
    LLMError,
    LLMRateLimitError,
    LLMTimeoutError,
)
from optia.logger import get_logger

logger = get_logger("llm_adapter")

CONFIG_DIR = Path(__file__).parent.parent / "config"
MODEL_CONFIG_PATH = CONFIG_DIR / "model.yaml"
LOCAL_MODEL_CONFIG_PATH = CONFIG_DIR / "local_model.yaml"

DEFAULT_PROFILE = "rule_based"


@dataclass
class LLMResponse:
    """Structured response from LLM."""
    content: str
    model: str
    usage: Optional[Dict[str, int]] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class LLMProvider(Protocol):
    """Protocol defining the LLM provider interface."""

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000
    ) -> LLMResponse:
        ...

    def get_model_name(self) -> str:
        ...


class BaseLLMAdapter(ABC):
    """Base class for LLM adapters."""

    provider = "unknown"
    # True for adapters that never produce model output
    offline = False

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.model_name = config.get("model_name", "unknown")
        self.timeout = float(config.get("timeout_seconds", 60.0))

    @abstractmethod
    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000
    ) -> LLMResponse:
        """Generate text completion."""

    def get_model_name(self) -> str:
        return self.model_name

    def _post(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None,
              params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """POST JSON and map transport failures onto the LLMError family."""
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, json=payload, headers=headers, params=params)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                raise LLMAuthError(provider=self.provider, model_name=self.model_name, endpoint=url)
            if status == 429:
                retry_after = e.response.headers.get("retry-after")
                raise LLMRateLimitError(
                    provider=self.provider,
                    model_name=self.model_name,
                    endpoint=url,
                    retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
                )
            raise LLMError(
                message=f"HTTP error {status}: {e.response.text[:500]}",
                provider=self.provider,
                model_name=self.model_name,
                endpoint=url,
            )
        except httpx.ConnectError:
            raise LLMConnectionError(provider=self.provider, model_name=self.model_name, endpoint=url)
        except httpx.TimeoutException:
            raise LLMTimeoutError(
                provider=self.provider,
                model_name=self.model_name,
                endpoint=url,
                timeout_seconds=self.timeout,
            )
        except (httpx.HTTPError, ValueError) as e:
            raise LLMError(
                message=f"Request failed: {e}",
                provider=self.provider,
                model_name=self.model_name,
                endpoint=url,
            )


class OpenAIAdapter(BaseLLMAdapter):
    """Adapter for OpenAI API (also compatible with other OpenAI-compatible APIs)."""

    provider = "openai"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.api_key = config.get("api_key") or os.environ.get("OPENAI_API_KEY")
        self.base_url = config.get("base_url", "https://api.openai.com/v1").rstrip("/")
        self.model_name = config.get("model_name", "gpt-4o-mini")

        if not self.api_key:
            raise ConfigError(
                "OpenAI API key not found. Set OPENAI_API_KEY or add 'api_key' to the profile",
                str(MODEL_CONFIG_PATH),
            )

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000
    ) -> LLMResponse:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        data = self._post(
            f"{self.base_url}/chat/completions",
            {
                "model": self.model_name,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
            headers={"Authorization": f"Bearer {self.api_key}"},
        )
        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise LLMError("Unexpected response shape", self.provider, self.model_name, self.base_url)

        return LLMResponse(content=content, model=data.get("model", self.model_name), usage=data.get("usage"))


class GeminiAdapter(BaseLLMAdapter):
    """Adapter for the Gemini generateContent REST API."""

    provider = "gemini"

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.api_key = config.get("api_key") or os.environ.get("GEMINI_API_KEY")
        self.base_url = config.get("base_url", "https://generativelanguage.googleapis.com/v1beta").rstrip("/")
        self.model_name = config.get("model_name", "gemini-1.5-flash")

        if not self.api_key:
            raise ConfigError(
                "Gemini API key not found. Set GEMINI_API_KEY or add 'api_key' to the profile",
                str(MODEL_CONFIG_PATH),
            )

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000
    ) -> LLMResponse:
        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        data = self._post(
            f"{self.base_url}/models/{self.model_name}:generateContent",
            payload,
            params={"key": self.api_key},
        )
        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            raise LLMError("Response has no candidates", self.provider, self.model_name, self.base_url)

        content = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        usage = data.get("usageMetadata") or {}
        return LLMResponse(
            content=content,
            model=self.model_name,
            usage={
                "prompt_tokens": usage.get("promptTokenCount", 0),
                "completion_tokens": usage.get("candidatesTokenCount", 0),
            },
        )


class OllamaAdapter(BaseLLMAdapter):
    """Adapter for local Ollama models."""

    provider = "ollama"

    def __init__(self, config: Dict[str, Any]):
        config = {"timeout_seconds": 120.0, **config}
        super().__init__(config)
        self.base_url = config.get("base_url", "http://localhost:11434").rstrip("/")
        self.model_name = config.get("model_name", "qwen2.5:7b")

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000
    ) -> LLMResponse:
        full_prompt = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt

        data = self._post(
            f"{self.base_url}/api/generate",
            {
                "model": self.model_name,
                "prompt": full_prompt,
                "stream": False,
                "format": "json",
                "options": {"temperature": temperature, "num_predict": max_tokens},
            },
        )
        return LLMResponse(
            content=data.get("response", ""),
            model=data.get("model", self.model_name),
            usage={
                "prompt_tokens": data.get("prompt_eval_count", 0),
                "completion_tokens": data.get("eval_count", 0),
            },
        )


class RuleBasedAdapter(BaseLLMAdapter):
    """
    Degraded mode used when no model is configured: produces no model output,
    so every turn is answered by the oracle's clarification fallback.
    """

    provider = "rule_based"
    offline = True

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.model_name = "rule_based"

    def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000
    ) -> LLMResponse:
        return LLMResponse(
            content="",
            model=self.model_name,
            usage={"prompt_tokens": 0, "completion_tokens": 0},
            error="rule-based mode: no model configured",
        )


def _read_model_file() -> Dict[str, Any]:
    path = LOCAL_MODEL_CONFIG_PATH if LOCAL_MODEL_CONFIG_PATH.exists() else MODEL_CONFIG_PATH
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as exc:
        raise ConfigError(f"Cannot read model config: {exc}", str(path))
    if not isinstance(data, dict):
        raise ConfigError("Model config must be a mapping", str(path))
    return data


def active_profile_name(raw_config: Optional[Dict[str, Any]] = None) -> str:
    """OPTIA_LLM_PROFILE env var > active_profile in the file > rule_based."""
    raw_config = _read_model_file() if raw_config is None else raw_config
    return os.environ.get("OPTIA_LLM_PROFILE") or raw_config.get("active_profile") or DEFAULT_PROFILE


def load_model_config(profile_name: Optional[str] = None) -> Dict[str, Any]:
    """
    Load one model profile with ${ENV} placeholders expanded.

    Supports the `profiles:` layout and a legacy flat mapping.
    """
    raw_config = _read_model_file()

    if "profiles" in raw_config:
        profiles = raw_config["profiles"] or {}
        target = profile_name or active_profile_name(raw_config)
        if target not in profiles:
            logger.warning("Model profile '%s' not found, using rule-based mode", target)
            return {"provider": "rule_based"}
        return _expand_env_vars(profiles[target])

    if raw_config:
        return _expand_env_vars(raw_config)

    return {"provider": "rule_based"}


_ENV_PATTERN = re.compile(r"^\$\{([^}]+)\}$")


def _expand_env_vars(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Expand ${VAR} placeholders in config values with environment variables.

    Raises:
        ConfigError: a placeholder names an unset variable
    """
    result: Dict[str, Any] = {}

    for key, value in config.items():
        if isinstance(value, str):
            match = _ENV_PATTERN.match(value.strip())
            if match:
                env_value = os.environ.get(match.group(1))
                if not env_value:
                    raise ConfigError(
                        f"'{key}' refers to ${{{match.group(1)}}}, which is not set",
                        str(MODEL_CONFIG_PATH),
                    )
                result[key] = env_value
            else:
                result[key] = value
        elif isinstance(value, dict):
            result[key] = _expand_env_vars(value)
        else:
            result[key] = value

    return result


ADAPTERS = {
    "openai": OpenAIAdapter,
    "gemini": GeminiAdapter,
    "ollama": OllamaAdapter,
    "rule_based": RuleBasedAdapter,
}


def create_llm_adapter(
    config: Optional[Dict[str, Any]] = None,
    profile_name: Optional[str] = None,
) -> BaseLLMAdapter:
    """
    Factory function to create the appropriate LLM adapter.

    Args:
        config: Optional config dict. If None, loads from model.yaml.
        profile_name: Optional profile name. Only used when config is None.
    """
    if config is None:
        config = load_model_config(profile_name)

    provider = str(config.get("provider", "rule_based")).lower()
    adapter_cls = ADAPTERS.get(provider)
    if adapter_cls is None:
        raise ConfigError(
            f"Unknown LLM provider '{provider}' (profile: {profile_name})",
            str(MODEL_CONFIG_PATH),
        )
    return adapter_cls(config)


# Profile name -> adapter instance
_llm_registry: Dict[str, BaseLLMAdapter] = {}


def get_llm(profile_name: Optional[str] = None) -> BaseLLMAdapter:
    """Get or create the cached adapter of a profile (default: the active profile)."""
    target_profile = profile_name or active_profile_name()

    if target_profile not in _llm_registry:
        logger.info("Initializing LLM profile: %s", target_profile)
        config = load_model_config(target_profile)
        _llm_registry[target_profile] = create_llm_adapter(config, target_profile)

    return _llm_registry[target_profile]


def reset_llm() -> None:
    """Reset the adapter registry (tests, config changes)."""
    _llm_registry.clear()
