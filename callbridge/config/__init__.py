"""
Configuration module for callbridge.

This module provides centralized configuration management for the entire package,
including constants, logging setup, and environment-based settings.

Key components:
- constants: Defines package-wide constants such as wire message types, audio
  format parameters and the closing-phrase vocabulary.
- logging_config: Provides a consistent logging infrastructure with support for
  console and file-based logging with rotation capabilities.
- settings: Pydantic models validating the environment and the per-component
  timing knobs (MonitorConfig, SessionConfig, StreamConfig).

Usage examples:
```python
from callbridge.config.settings import load_settings

settings = load_settings()  # also applies settings.log_level via configure_logging
session_config = settings.session_config({"contact_name": "Ada"})
```
"""

# Config module initialization
