"""Configuration helpers for the package ledger."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional
import os

from .models import ActivationPolicy


@dataclass(frozen=True)
class LedgerConfig:
    """Tunable policy for purchases, renewals and the background jobs."""

    activation_policy: ActivationPolicy
    amount_tolerance: Decimal
    default_currency: str
    renewal_window_days: int
    urgent_threshold_days: int
    expiry_sweep_hour: int
    reminder_hour: int
    reconciliation_hour: int
    jobs_enabled: bool


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_decimal(value: Optional[str], *, default: Decimal) -> Decimal:
    if value is None or value == "":
        return default
    try:
        parsed = Decimal(value.strip())
    except InvalidOperation as exc:
        raise ValueError(f"Expected decimal value, got {value!r}") from exc
    if not parsed.is_finite() or parsed < 0:
        raise ValueError(f"Expected a finite non-negative decimal, got {value!r}")
    return parsed


def _to_hour(value: Optional[str], *, default: int) -> int:
    hour = _to_int(value, default=default)
    if not 0 <= hour <= 23:
        raise ValueError(f"Expected an hour between 0 and 23, got {hour}")
    return hour


def load_ledger_config(env: Optional[Mapping[str, str]] = None) -> LedgerConfig:
    """Load :class:`LedgerConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    raw_policy = (env_mapping.get("LEDGER_ACTIVATION_POLICY") or ActivationPolicy.FIRST_PAYMENT.value).strip().lower()
    try:
        activation_policy = ActivationPolicy(raw_policy)
    except ValueError as exc:
        allowed = ", ".join(policy.value for policy in ActivationPolicy)
        raise ValueError(f"LEDGER_ACTIVATION_POLICY must be one of {allowed}, got {raw_policy!r}") from exc

    currency = (env_mapping.get("LEDGER_DEFAULT_CURRENCY") or "INR").strip().upper()
    if len(currency) != 3:
        raise ValueError(f"LEDGER_DEFAULT_CURRENCY must be a 3-letter code, got {currency!r}")

    return LedgerConfig(
        activation_policy=activation_policy,
        amount_tolerance=_to_decimal(env_mapping.get("LEDGER_AMOUNT_TOLERANCE"), default=Decimal("0.01")),
        default_currency=currency,
        renewal_window_days=max(0, _to_int(env_mapping.get("LEDGER_RENEWAL_WINDOW_DAYS"), default=30)),
        urgent_threshold_days=max(0, _to_int(env_mapping.get("LEDGER_URGENT_THRESHOLD_DAYS"), default=7)),
        expiry_sweep_hour=_to_hour(env_mapping.get("LEDGER_EXPIRY_SWEEP_HOUR"), default=0),
        reminder_hour=_to_hour(env_mapping.get("LEDGER_REMINDER_HOUR"), default=9),
        reconciliation_hour=_to_hour(env_mapping.get("LEDGER_RECONCILIATION_HOUR"), default=1),
        jobs_enabled=_to_bool(env_mapping.get("LEDGER_JOBS_ENABLED"), default=True),
    )


def load_database_config(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Return psycopg2 connection keyword arguments."""

    env_mapping = os.environ if env is None else env
    return {
        "host": env_mapping.get("DB_HOST", "127.0.0.1"),
        "port": _to_int(env_mapping.get("DB_PORT"), default=5432),
        "dbname": env_mapping.get("DB_NAME", "package_ledger"),
        "user": env_mapping.get("DB_USER", "ledger_user"),
        "password": env_mapping.get("DB_PASSWORD", "ledger_pass"),
    }


__all__ = ["LedgerConfig", "load_database_config", "load_ledger_config"]
