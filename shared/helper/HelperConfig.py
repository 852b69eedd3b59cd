"""Environment backed settings access shared by the server, the services and the backend clients."""

import logging
import os
from typing import Any


class HelperConfig:
    """Typed getters over environment variables.

    Every getter treats an unset or empty variable as missing. A missing variable
    falls back to ``default``; a ``default`` of None makes the variable mandatory.
    Keys are upper-cased before lookup.
    """

    _TRUTHY = ("true", "1", "yes", "on")

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _get_raw(self, key: str, default: Any) -> tuple[str, str | None]:
        """Return (normalised key, stripped value), value None if unset and a default exists.

        Raises:
            ValueError: If the variable is unset and there is no default.
        """
        key = key.upper()
        raw = (os.getenv(key) or "").strip()
        if raw:
            return key, raw
        if default is None:
            raise ValueError(f"Environment variable '{key}' is not set.")
        return key, None

    def get_string_val(self, key: str, default: str | None = None) -> str:
        _, raw = self._get_raw(key, default)
        return default if raw is None else raw

    def get_number_val(self, key: str, default: float | int | None = None) -> float | int:
        """Read an int, or a float when the value contains a decimal point.

        Raises:
            ValueError: If the variable is missing without default or is not numeric.
        """
        key, raw = self._get_raw(key, default)
        if raw is None:
            return default
        try:
            return float(raw) if "." in raw else int(raw)
        except ValueError:
            raise ValueError(f"Environment variable '{key}' is not a valid number: '{raw}'.")

    def get_bool_val(self, key: str, default: bool | None = None) -> bool:
        _, raw = self._get_raw(key, default)
        if raw is None:
            return default
        return raw.lower() in self._TRUTHY

    def get_list_val(self, key: str, default: list | None = None, separator: str = ",", element_type: type = str) -> list:
        """Read a bracketed list such as ``[a,b,c]``.

        Args:
            key (str): Environment variable name.
            default (list | None): Value used when the variable is unset.
            separator (str): Element delimiter inside the brackets.
            element_type (type): Callable each element is converted with.

        Raises:
            ValueError: If the value is missing without default, is not bracketed,
                or an element cannot be converted.
        """
        key, raw = self._get_raw(key, default)
        if raw is None:
            return default
        if not (raw.startswith("[") and raw.endswith("]")):
            raise ValueError(f"Environment variable '{key}' must look like '[a{separator}b]', got '{raw}'.")
        items = [item.strip() for item in raw[1:-1].split(separator)]
        try:
            return [element_type(item) for item in items if item]
        except ValueError as e:
            raise ValueError(f"Environment variable '{key}' has an element that is not {element_type.__name__}: {e}")

    def get_logger(self) -> logging.Logger:
        return self._logger
