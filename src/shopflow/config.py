"""Runtime settings for shopflow, read from the environment."""

import os
from dataclasses import dataclass, field
from pathlib import Path

# Can be overridden via SHOPFLOW_DATA_DIR environment variable
_default_data_dir = Path(__file__).parent.parent.parent / "data"
DATABASE_FILE = "shopflow.db"

DEFAULT_GATEWAYS = ("paypal", "stripe")
DEFAULT_GATEWAY_TIMEOUT = 5.0
DEFAULT_GATEWAY_SUCCESS_RATE = 0.9


@dataclass
class Settings:
    """Resolved configuration for one process."""

    data_dir: Path
    database_url: str
    gateways: list[str] = field(default_factory=lambda: list(DEFAULT_GATEWAYS))
    gateway_timeout: float = DEFAULT_GATEWAY_TIMEOUT
    gateway_success_rate: float = DEFAULT_GATEWAY_SUCCESS_RATE
    log_level: str = "INFO"


def _split_names(raw: str) -> list[str]:
    return [n.strip().lower() for n in raw.split(",") if n.strip()]


def load_settings(env: dict[str, str] | None = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        env: Mapping to read instead of os.environ (for testing).
    """
    env = os.environ if env is None else env

    data_dir = Path(env.get("SHOPFLOW_DATA_DIR", _default_data_dir))
    database_url = env.get("SHOPFLOW_DATABASE_URL") or f"sqlite:///{data_dir / DATABASE_FILE}"

    gateways = _split_names(env.get("SHOPFLOW_GATEWAYS", ",".join(DEFAULT_GATEWAYS)))

    return Settings(
        data_dir=data_dir,
        database_url=database_url,
        gateways=gateways,
        gateway_timeout=float(env.get("SHOPFLOW_GATEWAY_TIMEOUT", DEFAULT_GATEWAY_TIMEOUT)),
        gateway_success_rate=float(
            env.get("SHOPFLOW_GATEWAY_SUCCESS_RATE", DEFAULT_GATEWAY_SUCCESS_RATE)
        ),
        log_level=env.get("SHOPFLOW_LOG_LEVEL", "INFO").upper(),
    )
