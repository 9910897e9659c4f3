"""Configuration loading: YAML file plus environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import AppConfig, EmailConfig, PayFastConfig

logger = logging.getLogger(__name__)

_DEFAULT_DOCUMENT_DIR = os.path.join(
    os.path.dirname(os.path.abspath(__file__)), "output"
)


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, EmailConfig, PayFastConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    email_cfg = raw.get("email", {})
    payfast_cfg = raw.get("payfast", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for a stable key across restarts."
        )

    return (
        AppConfig(
            name=app_cfg.get("name", "Commerce Back-Office"),
            secret_key=secret_key,
            default_currency=os.environ.get(
                "DEFAULT_CURRENCY", app_cfg.get("default_currency", "USD")
            ).upper(),
            quote_validity_days=int(
                os.environ.get(
                    "QUOTE_VALIDITY_DAYS", app_cfg.get("quote_validity_days", 30)
                )
            ),
            document_dir=os.environ.get(
                "DOCUMENT_DIR", app_cfg.get("document_dir", _DEFAULT_DOCUMENT_DIR)
            ),
        ),
        EmailConfig(
            enabled=os.environ.get(
                "EMAIL_ENABLED", str(email_cfg.get("enabled", False))
            ).lower()
            in ("true", "1", "yes"),
            smtp_host=os.environ.get("SMTP_HOST", email_cfg.get("smtp_host", "")),
            smtp_port=int(os.environ.get("SMTP_PORT", email_cfg.get("smtp_port", 587))),
            smtp_user=os.environ.get("SMTP_USER", email_cfg.get("smtp_user", "")),
            smtp_password=os.environ.get("SMTP_PASSWORD", email_cfg.get("smtp_password", "")),
            sender=os.environ.get("EMAIL_SENDER", email_cfg.get("sender", "")),
            operator_cc=os.environ.get("EMAIL_OPERATOR_CC", email_cfg.get("operator_cc", "")),
        ),
        PayFastConfig(
            sandbox_url=os.environ.get(
                "PAYFAST_SANDBOX_URL",
                payfast_cfg.get("sandbox_url", "https://sandbox.payfast.co.za/eng/process"),
            ),
            live_url=os.environ.get(
                "PAYFAST_LIVE_URL",
                payfast_cfg.get("live_url", "https://www.payfast.co.za/eng/process"),
            ),
            notify_url=os.environ.get("PAYFAST_NOTIFY_URL", payfast_cfg.get("notify_url", "")),
            return_url=os.environ.get("PAYFAST_RETURN_URL", payfast_cfg.get("return_url", "")),
            cancel_url=os.environ.get("PAYFAST_CANCEL_URL", payfast_cfg.get("cancel_url", "")),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///commerce.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
