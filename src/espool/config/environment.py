"""
Environment Configuration Module

Central access to the settings espool reads from the process environment:

- PostgreSQL connection info (``DATABASE_URL`` or the ``POSTGRES_*`` parts)
- Connection pool bounds
- Log level
- Tracing exporter selection

Values come from environment variables, optionally seeded from ``.env`` files
in the working directory (``.env``, ``.env.{ENV}``, ``.env.{ENV}.local``).
Variables already present in the environment are never overridden.
"""

import os
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from espool.config.env_guard import RUNNING_PYTEST, get_system_env_value, is_truthy

DEFAULT_ENV = {
    "ENV": "development",
    "POSTGRES_HOST": "localhost",
    "POSTGRES_PORT": "5432",
    "POSTGRES_DB": "postgres",
    "POSTGRES_USER": "postgres",
    "POSTGRES_PASSWORD": None,
    "ESPOOL_POOL_MIN_SIZE": "1",
    "ESPOOL_POOL_MAX_SIZE": "10",
    "ESPOOL_TRACING_ENABLED": "false",
    "ESPOOL_TRACING_EXPORTER": "none",
    "OTEL_EXPORTER_OTLP_ENDPOINT": None,
    "OTEL_SERVICE_NAME": "espool",
}


def load_dotenv_files(root: Optional[Path] = None) -> list[Path]:
    """Load environment variables from .env files based on the current environment.

    Args:
        root: Directory holding the .env files (defaults to the working directory)

    Returns:
        The files that were found and loaded, in load order
    """
    from dotenv import load_dotenv

    root = root or Path.cwd()
    env_name = os.environ.get("ENV", DEFAULT_ENV["ENV"])

    loaded = []
    for env_file in (root / ".env", root / f".env.{env_name}", root / f".env.{env_name}.local"):
        if env_file.exists():
            load_dotenv(env_file, override=False)
            loaded.append(env_file)
    return loaded


class Environment:
    """
    Typed accessors over the process environment.

    All getters read the live environment on every call, so configuration
    changed by a test (or by a late ``load_dotenv_files``) is honoured
    without restarting anything.
    """

    _dotenv_loaded: bool = False

    @classmethod
    def load(cls) -> None:
        if cls._dotenv_loaded:
            return
        cls._dotenv_loaded = True
        # Tests configure through monkeypatch, never through a developer's .env
        if not RUNNING_PYTEST:
            load_dotenv_files()

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        cls.load()
        value = get_system_env_value(key)
        if value is not None:
            return value
        if default is not None:
            return default
        return DEFAULT_ENV.get(key)

    @classmethod
    def get_env(cls) -> str:
        return cls.get("ENV")

    @classmethod
    def get_log_level(cls) -> str:
        """Return desired log level string.

        Priority:
        1) ESPOOL_LOG_LEVEL
        2) LOG_LEVEL
        3) "DEBUG" if DEBUG is truthy
        4) "INFO"
        """
        level = os.getenv("ESPOOL_LOG_LEVEL") or os.getenv("LOG_LEVEL")
        if level:
            return str(level).upper()
        if is_truthy(os.getenv("DEBUG", "")):
            return "DEBUG"
        return "INFO"

    @classmethod
    def get_postgres_params(cls) -> dict[str, Any]:
        """
        The postgres params are the parameters that we use to connect to the database.
        """
        return {
            "database": cls.get("POSTGRES_DB"),
            "user": cls.get("POSTGRES_USER"),
            "password": cls.get("POSTGRES_PASSWORD"),
            "host": cls.get("POSTGRES_HOST"),
            "port": cls.get("POSTGRES_PORT"),
        }

    @classmethod
    def get_postgres_conninfo(cls) -> str:
        """
        Connection string for the pool. ``DATABASE_URL`` wins over the
        individual ``POSTGRES_*`` settings.
        """
        url = cls.get("DATABASE_URL")
        if url:
            return url
        params = cls.get_postgres_params()
        auth = quote(params["user"], safe="")
        if params["password"]:
            auth += ":" + quote(params["password"], safe="")
        return f"postgresql://{auth}@{params['host']}:{params['port']}/{params['database']}"

    @classmethod
    def get_pool_min_size(cls) -> int:
        return int(cls.get("ESPOOL_POOL_MIN_SIZE"))

    @classmethod
    def get_pool_max_size(cls) -> int:
        return int(cls.get("ESPOOL_POOL_MAX_SIZE"))

    @classmethod
    def is_tracing_enabled(cls) -> bool:
        return is_truthy(cls.get("ESPOOL_TRACING_ENABLED"))

    @classmethod
    def get_tracing_exporter(cls) -> str:
        return str(cls.get("ESPOOL_TRACING_EXPORTER")).lower()

    @classmethod
    def get_otlp_endpoint(cls) -> Optional[str]:
        return cls.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    @classmethod
    def get_service_name(cls) -> str:
        return cls.get("OTEL_SERVICE_NAME")
