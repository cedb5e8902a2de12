"""Configuration for the billing service.

Loads from a YAML config file with environment variable overrides.
Pattern: CONFIG__{SECTION}__{KEY} overrides nested YAML keys.
Example: CONFIG__PAYMENTS__ALLOW_PLACEHOLDER_LINKS=true

Gateway credentials can also be edited at runtime by an admin; those live
in VersionedSettings holders seeded from the loaded config.
"""

import os
import threading
from pathlib import Path
from typing import Generic, Optional, Tuple, TypeVar

import yaml
from pydantic import BaseModel, Field


# --- Gateway / channel configs ---


class MercadoPagoConfig(BaseModel):
    access_token: str = ""  # from env: MERCADO_PAGO_ACCESS_TOKEN
    public_key: str = ""
    client_id: str = ""
    client_secret: str = ""
    webhook_secret: str = ""
    is_production: bool = False
    api_base: str = "https://api.mercadopago.com"


class TwilioConfig(BaseModel):
    enabled: bool = True
    account_sid: str = ""  # from env: TWILIO_ACCOUNT_SID
    auth_token: str = ""  # from env: TWILIO_AUTH_TOKEN
    whatsapp_number: str = ""  # Twilio sandbox or WhatsApp Business number
    is_production: bool = False


class EmailConfig(BaseModel):
    enabled: bool = True
    sender: str = "me"
    client_id: str = ""  # from env: GMAIL_CLIENT_ID
    client_secret: str = ""
    refresh_token: str = ""


class PaymentsConfig(BaseModel):
    currency: str = "USD"
    timeout_seconds: float = Field(default=5.0, gt=0, description="Gateway call timeout")
    # Only honoured outside production
    allow_placeholder_links: bool = False


# --- Service Config ---


class ServiceConfig(BaseModel):
    environment: str = "development"
    base_url: str = "http://localhost:8000"
    log_level: str = "INFO"
    payments: PaymentsConfig = PaymentsConfig()
    mercadopago: MercadoPagoConfig = MercadoPagoConfig()
    email: EmailConfig = EmailConfig()
    whatsapp: TwilioConfig = TwilioConfig()

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"


# Dedicated env vars for secrets: (section, key) -> variable
_SECRET_ENV = {
    ("mercadopago", "access_token"): "MERCADO_PAGO_ACCESS_TOKEN",
    ("mercadopago", "public_key"): "MERCADO_PAGO_PUBLIC_KEY",
    ("mercadopago", "webhook_secret"): "MERCADO_PAGO_WEBHOOK_SECRET",
    ("whatsapp", "account_sid"): "TWILIO_ACCOUNT_SID",
    ("whatsapp", "auth_token"): "TWILIO_AUTH_TOKEN",
    ("whatsapp", "whatsapp_number"): "TWILIO_WHATSAPP_NUMBER",
    ("email", "client_id"): "GMAIL_CLIENT_ID",
    ("email", "client_secret"): "GMAIL_CLIENT_SECRET",
    ("email", "refresh_token"): "GMAIL_REFRESH_TOKEN",
}


def _apply_env_overrides(config_dict: dict, prefix: str = "CONFIG") -> dict:
    """Apply environment variable overrides to config dict.

    Pattern: CONFIG__SECTION__KEY=value maps to config[section][key] = value
    """
    for key, value in os.environ.items():
        if not key.startswith(f"{prefix}__"):
            continue
        parts = key[len(prefix) + 2 :].lower().split("__")
        target = config_dict
        for part in parts[:-1]:
            target = target.setdefault(part, {})
        if value.lower() in ("true", "false"):
            value = value.lower() == "true"
        elif value.isdigit():
            value = int(value)
        target[parts[-1]] = value
    return config_dict


def _apply_secret_env(config_dict: dict) -> dict:
    """Fill secrets left empty in YAML from their dedicated env vars."""
    for (section, key), env_name in _SECRET_ENV.items():
        target = config_dict.setdefault(section, {})
        if not target.get(key):
            target[key] = os.getenv(env_name, "")
    return config_dict


def load_config(config_path: Optional[str] = None) -> ServiceConfig:
    """Load configuration from YAML file with env overrides.

    Priority: env vars > YAML file > defaults
    """
    config_dict = {}

    if config_path is None:
        config_path = os.getenv("CONFIG_PATH", "config/billing.yml")
    path = Path(config_path)
    if path.exists():
        with open(path) as f:
            config_dict = yaml.safe_load(f) or {}

    config_dict = _apply_env_overrides(config_dict)
    config_dict = _apply_secret_env(config_dict)

    return ServiceConfig(**config_dict)


_config: Optional[ServiceConfig] = None


def get_config() -> ServiceConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Optional[str] = None) -> ServiceConfig:
    global _config
    _config = load_config(config_path)
    return _config


# --- Runtime-editable credentials ---

T = TypeVar("T", bound=BaseModel)


class VersionedSettings(Generic[T]):
    """Holds one credentials model; every update bumps the version.

    Consumers remember the version they built their client from and rebuild
    when it goes stale.
    """

    def __init__(self, initial: T):
        self._current = initial
        self._version = 1
        self._lock = threading.Lock()

    @property
    def current(self) -> T:
        return self._current

    @property
    def version(self) -> int:
        return self._version

    def snapshot(self) -> Tuple[int, T]:
        with self._lock:
            return self._version, self._current

    def update(self, **changes) -> T:
        """Apply non-None changes and bump the version."""
        changes = {k: v for k, v in changes.items() if v is not None}
        with self._lock:
            merged = {**self._current.model_dump(), **changes}
            self._current = type(self._current)(**merged)
            self._version += 1
            return self._current
