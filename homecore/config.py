"""
Zentrale Konfiguration - liest .env und settings.yaml
"""

import logging
import shutil
from pathlib import Path

import yaml
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Umgebungsvariablen aus .env"""

    # Home Assistant
    ha_url: str = "http://homeassistant.local:8123"
    ha_token: str = ""

    # LLM: "ollama" (lokal) oder "openai" (OpenAI-kompatible API, z.B. LM Studio)
    llm_provider: str = "ollama"
    llm_url: str = "http://localhost:11434"
    llm_model: str = "llama3.2"
    llm_api_key: str = ""

    # Persistenz
    redis_url: str = "redis://localhost:6379"
    store_backend: str = "redis"

    # homecore Server
    homecore_host: str = "0.0.0.0"
    homecore_port: int = 8300

    # API Key fuer /api/* Endpoints (leer = kein Schutz)
    homecore_api_key: str = ""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}


def load_yaml_config() -> dict:
    """Laedt settings.yaml, erzeugt sie aus .example wenn sie fehlt."""
    config_path = Path(__file__).parent.parent / "config" / "settings.yaml"
    example_path = config_path.with_suffix(".yaml.example")

    if not config_path.exists() and example_path.exists():
        try:
            shutil.copy2(example_path, config_path)
        except OSError as e:
            logger.warning("settings.yaml konnte nicht angelegt werden: %s", e)
            config_path = example_path

    if config_path.exists():
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f)
                if not isinstance(data, dict):
                    return {}
                return data
        except yaml.YAMLError as e:
            logger.error("settings.yaml ungueltig: %s", e)
            return {}
    return {}


# Globale Instanzen
settings = Settings()
yaml_config = load_yaml_config()

# settings.yaml ueberschreibt .env fuer das Store-Backend
_store_backend = (yaml_config.get("store") or {}).get("backend")
if _store_backend:
    settings.store_backend = _store_backend
