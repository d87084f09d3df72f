"""Billing configuration helpers."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar

from .app.fees.proration import ROUNDING_MODES
from .app.sequencing.generator import DEFAULT_LOCK_TIMEOUT_SECONDS

NumberT = TypeVar("NumberT", int, float)


@dataclass(frozen=True)
class BillingConfig:
    """Configuration for fee computation and sequence assignment."""

    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout: int
    sequence_lock_timeout_seconds: float
    fee_rounding: str
    fee_numbering_enabled: bool

    def connection_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments accepted by :func:`psycopg2.connect`."""

        return dict(
            host=self.db_host,
            port=self.db_port,
            dbname=self.db_name,
            user=self.db_user,
            password=self.db_password,
            connect_timeout=self.db_connect_timeout,
        )


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_number(value: Optional[str], *, default: NumberT, cast: Callable[[str], NumberT]) -> NumberT:
    if value is None or value.strip() == "":
        return default
    try:
        return cast(value)
    except ValueError as exc:
        raise ValueError(f"Expected {cast.__name__} value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingConfig:
    """Load :class:`BillingConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    lock_timeout = _to_number(
        env_mapping.get("SEQUENCE_LOCK_TIMEOUT_SECONDS"),
        default=DEFAULT_LOCK_TIMEOUT_SECONDS,
        cast=float,
    )
    if lock_timeout < 0:
        raise ValueError("SEQUENCE_LOCK_TIMEOUT_SECONDS must be non-negative")

    connect_timeout = _to_number(env_mapping.get("DB_CONNECT_TIMEOUT"), default=5, cast=int)
    if connect_timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")

    rounding = (env_mapping.get("FEE_ROUNDING") or "half_up").strip().lower()
    if rounding not in ROUNDING_MODES:
        raise ValueError(f"FEE_ROUNDING must be one of {sorted(ROUNDING_MODES)}, got {rounding!r}")

    return BillingConfig(
        db_host=env_mapping.get("DB_HOST", "127.0.0.1"),
        db_port=_to_number(env_mapping.get("DB_PORT"), default=5432, cast=int),
        db_name=env_mapping.get("DB_NAME", "billing_db"),
        db_user=env_mapping.get("DB_USER", "billing_user"),
        db_password=env_mapping.get("DB_PASSWORD", "billing_pass"),
        db_connect_timeout=connect_timeout,
        sequence_lock_timeout_seconds=lock_timeout,
        fee_rounding=rounding,
        fee_numbering_enabled=_to_bool(env_mapping.get("FEE_NUMBERING_ENABLED"), default=False),
    )


__all__ = ["BillingConfig", "load_billing_config"]
