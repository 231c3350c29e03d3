"""Configuration module for idmsync."""
from .registry import Registry
from .settings import AppConfig, load_settings

__all__ = ["AppConfig", "Registry", "load_settings"]
