"""Shipwright - a local-first coding-assistant agent."""

__version__ = "0.1.0"

from shipwright.config import Config
from shipwright.main import main

__all__ = ["Config", "main", "__version__"]
