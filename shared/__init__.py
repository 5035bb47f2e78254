"""
Regulatory Truth Shared Library
===============================

Common utilities, configuration, and abstractions shared by the pipeline
stages and the HTTP service.

Modules:
    - config: Configuration management with Pydantic Settings
    - logging: Structured logging with structlog
    - database: PostgreSQL and Redis client abstractions
    - llm: LLM provider abstraction (Claude, OpenAI, Ollama)
    - models: Shared Pydantic response models

Version: 0.1.0
"""

__version__ = "0.1.0"
__author__ = "Regulatory Truth Team"

from shared.config import settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
    "__version__",
]
