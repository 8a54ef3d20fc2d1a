"""
Config Layer - YAML loading and validation
"""

from .loader import load_config_file
from .validator import ConfigValidator

__all__ = ["load_config_file", "ConfigValidator"]
