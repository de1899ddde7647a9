"""
Service hosting for the engine.

Components:
    logging: structlog configuration
    runner: EngineService, the reference asyncio scheduler
"""

from siem_engine.services.logging import setup_logging
from siem_engine.services.runner import EngineService, main, run

__all__ = ["setup_logging", "EngineService", "main", "run"]
