"""
Infrastructure package: logging setup and blocking-SDK adapters.
"""

from hlgrid.infra.async_execution import AsyncExchange
from hlgrid.infra.logging_cfg import build_logger, log_event

__all__ = ["AsyncExchange", "build_logger", "log_event"]
