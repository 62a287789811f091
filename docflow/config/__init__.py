"""Configuration utilities."""

from docflow.config.settings import Settings, settings

__all__ = [
    'Settings',
    'settings',
]
