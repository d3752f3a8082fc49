"""Authentication broker for the paddock club backend."""

from .config import Config, load_config
from .logging import configure_logging
from .server import SERVER, main

__all__ = [
    "Config",
    "load_config",
    "configure_logging",
    "SERVER",
    "main",
]
