from __future__ import annotations

from decimal import Decimal

import pytest

from backend.app.packages import (
    ActivationPolicy,
    NotFound,
    OverpaymentError,
    load_database_config,
    load_ledger_config,
)


def test_defaults():
    config = load_ledger_config({})

    assert config.activation_policy == ActivationPolicy.FIRST_PAYMENT
    assert config.amount_tolerance == Decimal("0.01")
    assert config.default_currency == "INR"
    assert (config.renewal_window_days, config.urgent_threshold_days) == (30, 7)
    assert (config.expiry_sweep_hour, config.reminder_hour, config.reconciliation_hour) == (0, 9, 1)
    assert config.jobs_enabled is True


def test_environment_overrides():
    config = load_ledger_config(
        {
            "LEDGER_ACTIVATION_POLICY": "FULL_PAYMENT",
            "LEDGER_AMOUNT_TOLERANCE": "0.5",
            "LEDGER_DEFAULT_CURRENCY": "usd",
            "LEDGER_RENEWAL_WINDOW_DAYS": "14",
            "LEDGER_URGENT_THRESHOLD_DAYS": "3",
            "LEDGER_REMINDER_HOUR": "6",
            "LEDGER_JOBS_ENABLED": "off",
        }
    )

    assert config.activation_policy == ActivationPolicy.FULL_PAYMENT
    assert config.amount_tolerance == Decimal("0.5")
    assert config.default_currency == "USD"
    assert config.renewal_window_days == 14
    assert config.urgent_threshold_days == 3
    assert config.reminder_hour == 6
    assert config.jobs_enabled is False


@pytest.mark.parametrize(
    "env",
    [
        {"LEDGER_ACTIVATION_POLICY": "on_signup"},
        {"LEDGER_AMOUNT_TOLERANCE": "-1"},
        {"LEDGER_AMOUNT_TOLERANCE": "cheap"},
        {"LEDGER_DEFAULT_CURRENCY": "RUPEE"},
        {"LEDGER_EXPIRY_SWEEP_HOUR": "24"},
        {"LEDGER_RENEWAL_WINDOW_DAYS": "month"},
    ],
)
def test_invalid_values_are_rejected(env):
    with pytest.raises(ValueError):
        load_ledger_config(env)


def test_database_config():
    assert load_database_config({}) == {
        "host": "127.0.0.1",
        "port": 5432,
        "dbname": "package_ledger",
        "user": "ledger_user",
        "password": "ledger_pass",
    }
    assert load_database_config({"DB_HOST": "db", "DB_PORT": "6543"})["port"] == 6543


def test_errors_map_to_http_exceptions():
    not_found = NotFound("purchase", "pp_1").to_http_exception()
    assert not_found.status_code == 404
    assert not_found.detail == {
        "error": "not_found",
        "message": "purchase 'pp_1' not found",
        "resource": "purchase",
        "id": "pp_1",
    }

    overpayment = OverpaymentError("pp_1", Decimal("0"), Decimal("100"))
    assert overpayment.status_code == 422
    assert overpayment.payload["message"] == "payment amount must be positive, got 0"
