import json
import os
from pathlib import Path
from typing import Any, Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_pascal


# Load variables from a local .env if present
load_dotenv()


# Paths are resolved against the install root, not the working directory of a service manager
BASE_DIR: str = os.getenv("BILLING_BASE_DIR", str(Path(__file__).resolve().parents[1]))
CONFIG_PATH: str = os.getenv("BILLING_CONFIG_PATH", "appsettings.json")
CONFIG_SECTION: str = os.getenv("BILLING_CONFIG_SECTION", "RabbitMQ")
OUTPUT_DIR: str = os.getenv("BILLING_OUTPUT_DIR", "input_messages")

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE: str = os.getenv("BILLING_LOG_FILE", "service_log.txt")
METRICS_PORT: int = int(os.getenv("METRICS_PORT", "0"))
SHUTDOWN_GRACE_SECONDS: float = float(os.getenv("SHUTDOWN_GRACE_SECONDS", "30"))


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


class ConfigurationError(ValueError):
    """Raised when broker configuration is absent or cannot be bound."""


class ConnectionSettings(BaseModel):
    """Connection tuning knobs nested under ``ConnectionSettings``."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_pascal)

    automatic_recovery_enabled: bool = True
    network_recovery_interval_seconds: int = Field(default=10, ge=1)
    requested_connection_timeout_seconds: int = Field(default=30, ge=1)
    requested_heartbeat_seconds: int = Field(default=60, ge=0)
    client_provided_name_prefix: str = "Billing"


class BrokerConfig(BaseModel):
    """Immutable RabbitMQ connection and topology settings.

    Field aliases are PascalCase so the ``RabbitMQ`` section of
    ``appsettings.json`` binds as-is; snake_case names are accepted too.

    Example:
        >>> cfg = BrokerConfig.model_validate({"HostName": "mq", "QueueName": "bills"})
        >>> cfg.connection_name
        'Billing-Consumer'
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_pascal)

    host_name: str = "localhost"
    port: int = Field(default=5672, ge=1, le=65535)
    user_name: str = "guest"
    password: str = "guest"
    virtual_host: str = "/"
    use_tls: bool = False
    exchange_name: str = ""
    queue_name: str = Field(min_length=1)
    routing_key: str = ""
    dead_letter_exchange: str = ""
    dead_letter_queue: str = ""
    connection_settings: ConnectionSettings = Field(default_factory=ConnectionSettings)
    queue_arguments: dict[str, Any] = Field(default_factory=dict)

    @property
    def connection_name(self) -> str:
        """Client-provided name shown in the RabbitMQ management UI."""
        prefix = self.connection_settings.client_provided_name_prefix or "Billing"
        return f"{prefix}-Consumer"


class Settings(BaseModel):
    """Process-level settings for the consumer host.

    Override values via environment variables (or a ``.env`` file):
    ```bash
    export BILLING_CONFIG_PATH=/etc/billing/appsettings.json
    export BILLING_OUTPUT_DIR=/var/lib/billing/input_messages
    export METRICS_PORT=9102   # 0 disables the /metrics endpoint
    ```
    """
    base_dir: str = BASE_DIR
    config_path: str = CONFIG_PATH
    config_section: str = CONFIG_SECTION
    output_dir: str = OUTPUT_DIR
    log_level: str = LOG_LEVEL
    log_file: str = LOG_FILE
    metrics_port: int = METRICS_PORT
    shutdown_grace_seconds: float = SHUTDOWN_GRACE_SECONDS

    def resolve(self, path: str) -> Path:
        """Return ``path`` as absolute, relative paths anchored at ``base_dir``."""
        p = Path(path)
        return p if p.is_absolute() else Path(self.base_dir) / p


def get_settings() -> Settings:
    return Settings()


def _bind(data: Any, section: str) -> BrokerConfig:
    if not isinstance(data, Mapping):
        raise ConfigurationError(
            f"Section '{section}' exists but could not be mapped to type {BrokerConfig.__name__}."
        )
    try:
        return BrokerConfig.model_validate(dict(data))
    except ValidationError as exc:
        raise ConfigurationError(f"Section '{section}' is invalid: {exc}") from exc


def broker_config_from_file(path: str | Path, section: str = CONFIG_SECTION) -> BrokerConfig:
    """Bind ``section`` of a JSON settings file to a ``BrokerConfig``."""
    try:
        document = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigurationError(f"Cannot read configuration file '{path}': {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Configuration file '{path}' is not valid JSON: {exc}") from exc

    if not isinstance(document, Mapping) or section not in document:
        raise ConfigurationError(
            f"Configuration section '{section}' is missing! Please check {Path(path).name}."
        )
    return _bind(document[section], section)


def broker_config_from_env() -> BrokerConfig:
    """Build a ``BrokerConfig`` from ``RABBITMQ_*`` environment variables."""
    raw_args = os.getenv("RABBITMQ_QUEUE_ARGUMENTS", "")
    try:
        queue_arguments = json.loads(raw_args) if raw_args else {}
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"RABBITMQ_QUEUE_ARGUMENTS is not valid JSON: {exc}") from exc

    data: dict[str, Any] = {
        "host_name": os.getenv("RABBITMQ_HOST", "localhost"),
        "port": os.getenv("RABBITMQ_PORT", "5672"),
        "user_name": os.getenv("RABBITMQ_USER", "guest"),
        "password": os.getenv("RABBITMQ_PASS", "guest"),
        "virtual_host": os.getenv("RABBITMQ_VHOST", "/"),
        "use_tls": _env_flag("RABBITMQ_USE_TLS"),
        "exchange_name": os.getenv("RABBITMQ_EXCHANGE", ""),
        "queue_name": os.getenv("RABBITMQ_QUEUE", ""),
        "routing_key": os.getenv("RABBITMQ_ROUTING_KEY", ""),
        "dead_letter_exchange": os.getenv("RABBITMQ_DLX", ""),
        "dead_letter_queue": os.getenv("RABBITMQ_DLQ", ""),
        "queue_arguments": queue_arguments,
        "connection_settings": {
            "automatic_recovery_enabled": _env_flag("RABBITMQ_AUTO_RECOVERY", "true"),
            "network_recovery_interval_seconds": os.getenv("RABBITMQ_RECOVERY_INTERVAL", "10"),
            "requested_connection_timeout_seconds": os.getenv("RABBITMQ_CONNECT_TIMEOUT", "30"),
            "requested_heartbeat_seconds": os.getenv("RABBITMQ_HEARTBEAT", "60"),
            "client_provided_name_prefix": os.getenv("RABBITMQ_CLIENT_NAME_PREFIX", "Billing"),
        },
    }
    return _bind(data, "environment")


def load_broker_config(
    path: str | Path | None = None,
    section: str = CONFIG_SECTION,
    settings: Settings | None = None,
) -> BrokerConfig:
    """Load broker settings once at startup.

    An explicit ``path`` must exist. Without one, the default settings file is
    used when present and the environment otherwise.

    Raises:
        ConfigurationError: if the file or section is missing or malformed.
    """
    if path is not None:
        if not Path(path).is_file():
            raise ConfigurationError(f"Configuration file '{path}' is missing!")
        return broker_config_from_file(path, section)

    settings = settings or get_settings()
    default_path = settings.resolve(settings.config_path)
    if default_path.is_file():
        return broker_config_from_file(default_path, section)
    return broker_config_from_env()
