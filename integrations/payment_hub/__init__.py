"""Payment hub (service bus) integration."""
from common.config import env_bool, env_float, env_str


def hub_uri() -> str:
    return env_str("PAYMENT_HUB_URI", "https://paymenthub/").rstrip("/")


def token_ttl() -> float:
    return env_float("PAYMENT_HUB_TTL", 86400)


def dispatch_enabled() -> bool:
    return env_bool("PAYMENT_HUB_ENABLED", "0")


def payload_logging_enabled() -> bool:
    return env_bool("PAYMENT_HUB_LOGGING", "0")


def source_system() -> str:
    return env_str("PAYMENT_HUB_SOURCE_SYSTEM", "AHWR")
