import os
import sys
from typing import Any


def _is_running_under_pytest() -> bool:
    """Detect pytest from the worker environment variable or the command line."""
    if "PYTEST_CURRENT_TEST" in os.environ:
        return True
    return any(arg and "pytest" in str(arg).lower() for arg in sys.argv)


RUNNING_PYTEST = _is_running_under_pytest()


def get_system_env_value(key: str, default: Any = None) -> Any:
    """Return an environment variable value.

    Always reads the live process environment so tests can drive
    configuration through ``monkeypatch.setenv``.
    """
    return os.environ.get(key, default)


def is_truthy(value: Any) -> bool:
    return str(value).strip().lower() in {"1", "true", "yes", "on"}
