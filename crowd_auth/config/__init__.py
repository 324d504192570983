"""Configuration module for the Crowd identity bridge."""
from .settings import CrowdConfig, load_settings

__all__ = ["CrowdConfig", "load_settings"]
