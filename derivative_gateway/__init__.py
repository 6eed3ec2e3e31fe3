from .app import create_app
from .config_loader import GatewayConfig, load_config_from_env

__all__ = [
    "GatewayConfig",
    "create_app",
    "load_config_from_env",
]
