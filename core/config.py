import logging
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.errors import ConfigError

# --- Base Path ---
BASE_DIR = Path(__file__).resolve().parent.parent
logger = logging.getLogger(__name__)

# --- Environment-based Settings ---

class AppSettings(BaseSettings):
    """
    Main application settings loaded from environment variables.
    The .env file is loaded automatically by pydantic-settings.
    """
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    # --- General & Core ---
    LOG_LEVEL: str = Field("INFO", description="Log level for the application (e.g., DEBUG, INFO, WARNING, ERROR)")
    CODEBRIDGE_CONFIG_DIR: Optional[str] = Field(None, description="Optional: Directory holding bridge.yml, routing.yml and providers.yml.")

    # --- Bridge ---
    BRIDGE_SIDE: Literal["local", "remote"] = Field("remote", description="Which side of the bridge this process is.")
    BRIDGE_TRANSPORT: Literal["stdio", "native", "websocket"] = Field("stdio", description="Channel used to reach the peer.")
    BRIDGE_WS_URL: Optional[str] = Field(None, description="WebSocket URL when BRIDGE_TRANSPORT=websocket.")
    BRIDGE_NATIVE_COMMAND: Optional[str] = Field(None, description="Peer executable when BRIDGE_TRANSPORT=native.")

# --- YAML-based Configuration Models ---

class BridgeConfig(BaseModel):
    request_timeout: float = Field(30.0, gt=0)
    sweep_interval: float = Field(1.0, gt=0)
    max_frame_bytes: int = Field(1024 * 1024, gt=0)

class RoutingConfig(BaseModel):
    max_attempts: int = Field(4, ge=1)
    attempt_timeout: float = Field(30.0, gt=0)
    backoff_base: float = Field(0.5, ge=0)
    backoff_cap: float = Field(8.0, ge=0)
    failure_threshold: int = Field(3, ge=1)
    probe_after: Optional[float] = Field(None, gt=0)
    default_ttl: float = Field(300.0, gt=0)
    operation_ttls: Dict[str, float] = Field(default_factory=dict)
    context_fields: Dict[str, List[str]] = Field(default_factory=dict)
    cache_max_entries: int = Field(2048, ge=1)
    cache_sweep_interval: float = Field(60.0, gt=0)

    def ttl_for(self, operation: str) -> float:
        return self.operation_ttls.get(operation, self.default_ttl)

class ProviderConfig(BaseModel):
    name: str
    kind: Literal["openai", "anthropic", "ollama", "bridge"]
    priority: int = 0
    model: Optional[str] = None
    base_url: Optional[str] = None
    api_key_env: Optional[str] = None
    operations: List[str] = Field(default_factory=list)
    action: str = "ai.call"

class ProvidersConfig(BaseModel):
    providers: List[ProviderConfig] = Field(default_factory=list)

# --- Main Config Object ---

class Config:
    """
    A unified configuration object.
    """
    def __init__(self, app: Optional[AppSettings] = None, config_dir: Optional[Path] = None):
        try:
            self.app = app or AppSettings()
        except ValidationError as e:
            raise ConfigError(f"Configuration validation error: {e}") from e

        if config_dir is None and self.app.CODEBRIDGE_CONFIG_DIR:
            config_dir = Path(self.app.CODEBRIDGE_CONFIG_DIR)
        self.config_dir = config_dir or BASE_DIR / 'configs'

        self.bridge: BridgeConfig = self._load('bridge', BridgeConfig)
        self.routing: RoutingConfig = self._load('routing', RoutingConfig)
        self.providers: ProvidersConfig = self._load('providers', ProvidersConfig)

    def _load(self, name: str, model):
        try:
            return load_config(name, model, self.config_dir)
        except FileNotFoundError as e:
            raise ConfigError(str(e)) from e
        except ValidationError as e:
            raise ConfigError(f"Invalid '{name}.yml': {e}") from e

def load_yaml(name: str, config_dir: Optional[Path] = None) -> dict:
    """Loads a YAML file from the config directory, returning {} for an empty file."""
    config_path = (config_dir or BASE_DIR / 'configs') / f'{name}.yml'
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file '{name}.yml' not found in {config_path.parent}")
    with open(config_path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}

def load_config(name: str, model, config_dir: Optional[Path] = None):
    """Loads a YAML file and validates it with the given Pydantic model."""
    return model.model_validate(load_yaml(name, config_dir))

# --- Global Config Instance ---
_settings_instance = None

def get_settings() -> Config:
    """
    Returns a memoized instance of the Config object.
    This function controls when the settings are loaded and validated,
    making the application more testable.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Config()
        logger.info(f"Configuration loaded from {_settings_instance.config_dir}")
    return _settings_instance

def reset_settings() -> None:
    """Drops the memoized Config so the next get_settings() reloads it."""
    global _settings_instance
    _settings_instance = None
