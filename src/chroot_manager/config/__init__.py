"""Sandbox configuration loading and validation."""

from .settings import DENIED_ROOTS, SandboxConfig, config_from_dict, load_config

__all__ = ["DENIED_ROOTS", "SandboxConfig", "config_from_dict", "load_config"]
