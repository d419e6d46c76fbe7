"""
Configuration management and loading.

Loads model profiles, preferences and pricing overrides from YAML.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from shell_ai.core.pricing import DEFAULT_PRICING_TABLE, ModelPricing, PricingTable
from shell_ai.storage.db import LEDGER_DIR_NAME
from shell_ai.storage.models import Message, Role

CONFIG_FILE_NAME = "config.yaml"


def default_config_path() -> Path:
    """Return ``~/.shell-ai/config.yaml``."""
    return Path.home() / LEDGER_DIR_NAME / CONFIG_FILE_NAME


@dataclass(frozen=True)
class ModelConfig:
    """Connection profile for one model."""
    name: str
    endpoint: str
    auth_env_var: str
    org_env_var: Optional[str] = None
    prompt: Tuple[Message, ...] = ()

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("model name is required and cannot be empty")
        if not self.endpoint or not self.endpoint.strip():
            raise ValueError(f"endpoint is required for model '{self.name}'")

    def api_key(self) -> str:
        """Read the credential from the configured environment variable.

        Raises:
            ValueError: If the variable is unset or empty
        """
        key = os.environ.get(self.auth_env_var, "")
        if not key:
            raise ValueError(
                f"environment variable {self.auth_env_var} is not set "
                f"(required by model '{self.name}')"
            )
        return key

    def org_id(self) -> Optional[str]:
        if not self.org_env_var:
            return None
        return os.environ.get(self.org_env_var) or None


@dataclass(frozen=True)
class Preferences:
    """User preferences."""
    default_model: Optional[str] = None


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    models: List[ModelConfig]
    preferences: Preferences = field(default_factory=Preferences)
    pricing: Dict[str, ModelPricing] = field(default_factory=dict)

    def get_model(self, name: Optional[str] = None) -> ModelConfig:
        """Get a model profile by name, falling back to the default model.

        Raises:
            ValueError: If no matching profile exists
        """
        wanted = name or self.preferences.default_model
        if wanted is None:
            return self.models[0]
        for model in self.models:
            if model.name == wanted:
                return model
        known = [model.name for model in self.models]
        raise ValueError(f"Unknown model '{wanted}', configured models: {known}")

    def pricing_table(self) -> PricingTable:
        """Default prices with the configured overrides applied."""
        return DEFAULT_PRICING_TABLE.merged(self.pricing)


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Args:
        path: Path to YAML configuration file, defaults to ``~/.shell-ai/config.yaml``

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path) if path else default_config_path()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a mapping")

    allowed_top_keys = {'models', 'preferences', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    models_data = raw_config.get('models')
    if not models_data:
        raise ValueError("Missing required 'models' section")
    if not isinstance(models_data, list):
        raise ValueError("'models' must be a list")
    models = [
        _parse_model_config(model_data, f"models[{i}]")
        for i, model_data in enumerate(models_data)
    ]

    preferences = _parse_preferences(raw_config.get('preferences') or {})
    if preferences.default_model and preferences.default_model not in {m.name for m in models}:
        raise ValueError(
            f"default_model '{preferences.default_model}' is not a configured model"
        )

    pricing_data = raw_config.get('pricing') or {}
    if not isinstance(pricing_data, dict):
        raise ValueError("'pricing' must be a dictionary")
    pricing = {
        str(model): _parse_pricing(data, f"pricing.{model}")
        for model, data in pricing_data.items()
    }

    return AppConfig(models=models, preferences=preferences, pricing=pricing)


def _parse_model_config(data, path: str) -> ModelConfig:
    """Parse and validate one model profile.

    Args:
        data: Model profile data
        path: Path for error messages

    Returns:
        Validated ModelConfig

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    allowed_keys = {'name', 'endpoint', 'auth_env_var', 'org_env_var', 'prompt'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for required in ('name', 'endpoint', 'auth_env_var'):
        if not data.get(required):
            raise ValueError(f"Missing required '{required}' in {path}")
        if not isinstance(data[required], str):
            raise ValueError(f"'{required}' in {path} must be a string")

    prompt_data = data.get('prompt') or []
    if not isinstance(prompt_data, list):
        raise ValueError(f"'prompt' in {path} must be a list")
    prompt = tuple(
        _parse_message(message, f"{path}.prompt[{i}]")
        for i, message in enumerate(prompt_data)
    )

    return ModelConfig(
        name=data['name'],
        endpoint=data['endpoint'],
        auth_env_var=data['auth_env_var'],
        org_env_var=data.get('org_env_var') or None,
        prompt=prompt,
    )


def _parse_message(data, path: str) -> Message:
    if not isinstance(data, dict) or set(data.keys()) != {'role', 'content'}:
        raise ValueError(f"{path} must have exactly 'role' and 'content'")

    role_str = data['role']
    try:
        role = Role(str(role_str).lower())
    except ValueError:
        valid_roles = [role.value for role in Role]
        raise ValueError(f"'role' in {path} must be one of: {valid_roles}")

    return Message(role=role, content=str(data['content']))


def _parse_preferences(data) -> Preferences:
    if not isinstance(data, dict):
        raise ValueError("'preferences' must be a dictionary")

    unknown_keys = set(data.keys()) - {'default_model'}
    if unknown_keys:
        raise ValueError(f"Unknown preference keys: {unknown_keys}")

    default_model = data.get('default_model')
    if default_model is not None and not isinstance(default_model, str):
        raise ValueError("'default_model' must be a string")
    return Preferences(default_model=default_model or None)


def _parse_pricing(data, path: str) -> ModelPricing:
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    allowed_keys = ('input_per_million', 'output_per_million')
    if set(data.keys()) != set(allowed_keys):
        raise ValueError(f"{path} must have exactly: {list(allowed_keys)}")

    values = {}
    for key in allowed_keys:
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValueError(f"'{key}' in {path} must be a number >= 0")
        values[key] = float(value)

    return ModelPricing(**values)
