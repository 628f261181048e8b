"""Land Grants rate calculator integration."""
from typing import Final

from common.config import env_bool, env_str

CALCULATE_PATH: Final[str] = "/payments/calculate"


def base_url() -> str:
    return env_str("LAND_GRANTS_BASE_URL", "http://localhost:3001")


def payload_logging_enabled() -> bool:
    return env_bool("LAND_GRANTS_LOGGING", "0")
