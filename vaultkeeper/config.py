"""
Configuration: loads settings from .vaultkeeper.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).

Example ``.vaultkeeper.yaml``::

    vault_directory: ~/notes
    max_rag_examples: 15
    default_embedding_backend: ollama:nomic-embed-text
    default_llm: mistral
    llm_models:
      mistral:
        kind: local
        model_path: ~/models/mistral-7b-instruct.Q4_K_M.gguf
        context_length: 4096
      gpt-4o-mini:
        kind: remote
        model: gpt-4o-mini
        api_url: https://api.openai.com/v1
        context_length: 16384
"""

import os

import yaml

from .errors import ConfigurationError
from .llm.base import BackendConfig


_DEFAULTS = {
    "vault_directory": "",
    "max_rag_examples": 15,
    "default_embedding_backend": "hashing",
    "vector_db_path": os.path.join("~", ".vaultkeeper", "vectordb.sqlite3"),
    "sync_batch_size": 20,
    "embed_workers": 4,
    "log_dir": ".vaultkeeper/logs",
    "ollama_base_url": "http://localhost:11434",
    "openai_api_key": "",
    "openai_base_url": "https://api.openai.com/v1",
    "default_llm": "",
    "llm_models": {},
}

# Config file search locations
_CONFIG_FILENAMES = [".vaultkeeper.yaml", ".vaultkeeper.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


def _parse_llm_models(section, openai_key: str, openai_url: str) -> dict[str, BackendConfig]:
    """Turn the ``llm_models`` YAML mapping into :class:`BackendConfig` objects."""
    models: dict[str, BackendConfig] = {}
    if not isinstance(section, dict):
        return models
    for name, raw in section.items():
        if not isinstance(raw, dict):
            continue
        kind = str(raw.get("kind", "remote")).lower()
        model_path = raw.get("model_path") or ""
        models[str(name)] = BackendConfig(
            name=str(name),
            kind=kind,
            model_path=os.path.expanduser(str(model_path)) if model_path else "",
            model=str(raw.get("model") or name),
            api_url=str(raw.get("api_url") or (openai_url if kind == "remote" else "")),
            api_key=str(raw.get("api_key") or (openai_key if kind == "remote" else "")),
            context_length=int(raw.get("context_length", 4096)),
        )
    return models


class Config:
    """Application configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables
    3. .vaultkeeper.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, default, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        vault = _get("VAULT_DIRECTORY", "vault_directory", _DEFAULTS["vault_directory"])
        self.VAULT_DIRECTORY = os.path.abspath(os.path.expanduser(vault)) if vault else ""

        self.MAX_RAG_EXAMPLES = _get("MAX_RAG_EXAMPLES", "max_rag_examples",
                                     _DEFAULTS["max_rag_examples"], cast=int)
        self.DEFAULT_EMBEDDING_BACKEND = _get(
            "DEFAULT_EMBEDDING_BACKEND", "default_embedding_backend",
            _DEFAULTS["default_embedding_backend"])
        self.VECTOR_DB_PATH = os.path.expanduser(
            _get("VECTOR_DB_PATH", "vector_db_path", _DEFAULTS["vector_db_path"]))

        self.SYNC_BATCH_SIZE = _get("SYNC_BATCH_SIZE", "sync_batch_size",
                                    _DEFAULTS["sync_batch_size"], cast=int)
        self.EMBED_WORKERS = _get("EMBED_WORKERS", "embed_workers",
                                  _DEFAULTS["embed_workers"], cast=int)
        self.LOG_DIR = _get("LOG_DIR", "log_dir", _DEFAULTS["log_dir"])

        self.OLLAMA_BASE_URL = _get("OLLAMA_BASE_URL", "ollama_base_url",
                                    _DEFAULTS["ollama_base_url"])

        # OpenAI / cloud provider
        openai_section = yd.get("openai", {}) if isinstance(yd.get("openai"), dict) else {}
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or openai_section.get(
            "api_key", _DEFAULTS["openai_api_key"])
        self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or openai_section.get(
            "base_url", _DEFAULTS["openai_base_url"])

        self.LLM_MODELS = _parse_llm_models(
            yd.get("llm_models", _DEFAULTS["llm_models"]),
            self.OPENAI_API_KEY, self.OPENAI_BASE_URL,
        )
        self.DEFAULT_LLM = _get("DEFAULT_LLM", "default_llm", _DEFAULTS["default_llm"])

    def llm_config(self, name: str | None = None) -> BackendConfig:
        """Return the backend config for *name* (default: ``DEFAULT_LLM``)."""
        name = name or self.DEFAULT_LLM
        if not name:
            raise ConfigurationError("No LLM selected and no default_llm configured.")
        try:
            return self.LLM_MODELS[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown LLM '{name}'. Configured: {', '.join(sorted(self.LLM_MODELS)) or 'none'}"
            ) from None

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)
