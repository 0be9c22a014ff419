"""Runtime settings for sqlops.

Values come from the process environment, or from a dotenv file when one
is given explicitly. Unset keys fall back to defaults that work against a
stock SQL Server install on Windows.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from dotenv import dotenv_values

from sqlops.core.errors import ConfigError

DEFAULT_ASSEMBLY_ROOTS = (
    r"C:\Windows\assembly\GAC_MSIL",
    r"C:\Windows\Microsoft.NET\assembly\GAC_MSIL",
)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    """Resolved sqlops settings."""

    odbc_driver: str = "ODBC Driver 18 for SQL Server"
    connect_timeout: int = 15
    trust_server_certificate: bool = True
    encrypt: bool = True
    assembly_roots: tuple[str, ...] = DEFAULT_ASSEMBLY_ROOTS
    winrm_transport: str = "ntlm"
    log_level: str = "WARNING"


def _get(raw: Mapping[str, str | None], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _get_int(raw: Mapping[str, str | None], key: str, default: int) -> int:
    value = _get(raw, key)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer (got '{value}')") from exc
    if parsed < 0:
        raise ConfigError(f"{key} must be >= 0 (got {parsed})")
    return parsed


def _get_bool(raw: Mapping[str, str | None], key: str, default: bool) -> bool:
    value = _get(raw, key)
    if value is None:
        return default
    lowered = value.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigError(f"{key} must be a boolean (got '{value}')")


def load_settings(env_file: str | None = None) -> Settings:
    """
    Build Settings from the environment or from a dotenv file.

    Args:
        env_file: Optional path to a dotenv file. When given, only that file
                  is read; the process environment is ignored.

    Raises:
        ConfigError: If the file does not exist or a value is malformed.
    """
    if env_file:
        if not os.path.isfile(env_file):
            raise ConfigError(f"Settings file '{env_file}' does not exist")
        raw: Mapping[str, str | None] = dotenv_values(env_file)
    else:
        raw = os.environ

    defaults = Settings()
    roots = _get(raw, "SQLOPS_ASSEMBLY_ROOTS")

    return Settings(
        odbc_driver=_get(raw, "SQLOPS_ODBC_DRIVER") or defaults.odbc_driver,
        connect_timeout=_get_int(
            raw, "SQLOPS_CONNECT_TIMEOUT", defaults.connect_timeout
        ),
        trust_server_certificate=_get_bool(
            raw,
            "SQLOPS_TRUST_SERVER_CERTIFICATE",
            defaults.trust_server_certificate,
        ),
        encrypt=_get_bool(raw, "SQLOPS_ENCRYPT", defaults.encrypt),
        assembly_roots=(
            tuple(r.strip() for r in roots.split(";") if r.strip())
            if roots
            else defaults.assembly_roots
        ),
        winrm_transport=_get(raw, "SQLOPS_WINRM_TRANSPORT")
        or defaults.winrm_transport,
        log_level=(_get(raw, "SQLOPS_LOG_LEVEL") or defaults.log_level).upper(),
    )
