#!/usr/bin/env python3
"""
Configuration Manager

Handles loading configuration from JSON file and environment variables.
Provides easy access to LLM settings, the model price catalog, and the
sampling / batching / conflict resolution parameters of the auto-analyze pipeline.
"""

import json
import os
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

CONFIG_PATH_ENV = "AUTO_ANALYZE_CONFIG"
DEFAULT_CONFIG_FILE = "config.json"

API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


@dataclass
class LLMConfig:
    provider: str
    model: str
    temperature: float
    output_max_token_size: int
    request_timeout: float = 120.0


@dataclass
class ModelInfo:
    """Catalog entry for a selectable model, including its token pricing"""
    id: str
    name: str
    provider: str
    api_model_string: str
    input_price_per_million: float
    output_price_per_million: float
    context_window: int = 128000


@dataclass
class SamplingConfig:
    window_hours: List[float] = field(default_factory=lambda: [3, 6, 12, 144])
    max_window_hours: float = 144
    max_attempts: int = 4
    page_size: int = 1000
    max_pages: int = 10
    min_messages_per_session: int = 2
    containment_types: List[str] = field(default_factory=lambda: ["agent", "selfService", "dropOff"])
    timezone: str = "America/New_York"
    message_buffer_hours: float = 1
    max_workers: int = 3


@dataclass
class BatchConfig:
    batch_size: int = 5
    max_workers: int = 4
    max_retries: int = 3
    retry_base_delay: float = 2.0
    missing_session_retries: int = 2
    max_session_chars: int = 8000
    requests_per_minute: int = 60
    discovery_batches: int = 1


@dataclass
class ConflictResolutionConfig:
    min_distinct_values: int = 6
    token_overlap_threshold: float = 0.5
    similarity_threshold: float = 0.8


@dataclass
class JobConfig:
    min_session_count: int = 5
    max_session_count: int = 1000
    retention_seconds: int = 3600
    api_key_prefixes: Dict[str, str] = field(default_factory=dict)


class ConfigManager:
    """Manages configuration loading and access"""

    def __init__(self, config_file: Optional[str] = None):
        self.config_file = config_file or os.getenv(CONFIG_PATH_ENV, DEFAULT_CONFIG_FILE)
        self.config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from JSON file"""
        try:
            with open(self.config_file, 'r') as f:
                return json.load(f)
        except FileNotFoundError:
            raise FileNotFoundError(f"Configuration file '{self.config_file}' not found. Please create a valid config.json file or set {CONFIG_PATH_ENV}.")
        except json.JSONDecodeError as e:
            raise json.JSONDecodeError(f"Error parsing configuration file '{self.config_file}': {e}. Please fix the JSON syntax.", e.doc, e.pos)

    def _section(self, name: str) -> Dict[str, Any]:
        if name not in self.config:
            raise KeyError(f"No '{name}' section found in {self.config_file}")
        return self.config[name]

    def get_llm_config(self, provider: Optional[str] = None,
                      model_type: str = "default") -> LLMConfig:
        """Get LLM configuration for specified provider"""

        llm_section = self._section("llm")
        provider = provider or llm_section["primary_provider"]

        if provider not in llm_section["providers"]:
            raise KeyError(f"Provider '{provider}' not found in config.json. Available providers: {list(llm_section['providers'].keys())}")

        provider_config = llm_section["providers"][provider]

        if "models" not in provider_config:
            raise KeyError(f"No models configuration found for provider '{provider}' in config.json")

        models = provider_config["models"]
        if model_type not in models:
            if "default" not in models:
                raise KeyError(f"Model type '{model_type}' not found and no 'default' model specified for provider '{provider}' in config.json")
            model = models["default"]
        else:
            model = models[model_type]

        return LLMConfig(
            provider=provider,
            model=model,
            temperature=provider_config["temperature"],
            output_max_token_size=provider_config["output_max_token_size"],
            request_timeout=provider_config.get("request_timeout", 120.0)
        )

    def get_model_catalog(self) -> List[ModelInfo]:
        """Get every selectable model with its pricing"""
        llm_section = self._section("llm")
        if "models" not in llm_section:
            raise KeyError("No 'llm.models' catalog found in config.json")
        return [ModelInfo(**entry) for entry in llm_section["models"]]

    def get_model_info(self, model_id: str) -> Optional[ModelInfo]:
        """Look up a catalog entry by model id"""
        for model in self.get_model_catalog():
            if model.id == model_id:
                return model
        return None

    def list_available_models(self, provider: Optional[str] = None) -> Dict[str, str]:
        """List catalog model ids with display names, optionally for one provider"""
        return {
            model.id: model.name
            for model in self.get_model_catalog()
            if provider is None or model.provider == provider
        }

    def get_sampling_config(self) -> SamplingConfig:
        return SamplingConfig(**self._section("sampling"))

    def get_batch_config(self) -> BatchConfig:
        return BatchConfig(**self._section("batch"))

    def get_conflict_resolution_config(self) -> ConflictResolutionConfig:
        return ConflictResolutionConfig(**self._section("conflict_resolution"))

    def get_job_config(self) -> JobConfig:
        return JobConfig(**self._section("job"))

    def get_api_keys(self) -> Dict[str, Optional[str]]:
        """Get API keys from environment"""
        return {provider: os.getenv(env_var) for provider, env_var in API_KEY_ENV_VARS.items()}

    def validate_config(self) -> Dict[str, Any]:
        """Validate configuration and return status"""
        status = {
            "config_file_exists": os.path.exists(self.config_file),
            "env_file_exists": os.path.exists(".env"),
            "api_keys": {},
            "available_providers": []
        }

        keys = self.get_api_keys()
        for provider, key in keys.items():
            status["api_keys"][provider] = "configured" if key else "missing"
            if key:
                status["available_providers"].append(provider)

        return status


_config_manager: Optional[ConfigManager] = None


def get_config() -> ConfigManager:
    """Get global config manager instance, loading it on first use"""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


# Convenience functions
def get_llm_config(provider: Optional[str] = None, model_type: str = "default") -> LLMConfig:
    return get_config().get_llm_config(provider, model_type)


def get_sampling_config() -> SamplingConfig:
    return get_config().get_sampling_config()


def get_batch_config() -> BatchConfig:
    return get_config().get_batch_config()


def get_conflict_resolution_config() -> ConflictResolutionConfig:
    return get_config().get_conflict_resolution_config()


if __name__ == "__main__":
    config = get_config()

    print("=== Configuration Validation ===")
    status = config.validate_config()
    for key, value in status.items():
        print(f"{key}: {value}")

    print("\n=== Model Catalog ===")
    for model in config.get_model_catalog():
        print(f"{model.id} ({model.provider}): ${model.input_price_per_million}/M in, ${model.output_price_per_million}/M out")

    print("\n=== Pipeline Sections ===")
    print(f"sampling: {config.get_sampling_config()}")
    print(f"batch: {config.get_batch_config()}")
    print(f"conflict_resolution: {config.get_conflict_resolution_config()}")
    print(f"job: {config.get_job_config()}")
