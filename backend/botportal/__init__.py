"""
Bot Portal Backend Application
"""

__version__ = "1.0.0"
__author__ = "Bot Portal Team"

# Application metadata
APP_NAME = "Bot Portal"
APP_DESCRIPTION = "Multi-tenant chat portal delivering agent replies asynchronously"

from .config import settings, get_settings

__all__ = [
    "settings",
    "get_settings",
    "APP_NAME",
    "APP_DESCRIPTION",
    "__version__",
]
