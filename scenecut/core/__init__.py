from scenecut.core.config import get_config
from scenecut.core.logging import setup_logging

__all__ = ["get_config", "setup_logging"]
