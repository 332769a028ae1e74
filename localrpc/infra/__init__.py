# Infrastructure module - result cache, metrics, logging
# Config lives in infra.config (imported directly; it depends on core)

from .cache import ToolCache, CacheEntry, make_cache_key
from .metrics import PerformanceMonitor, ToolMetrics
from .logging import get_logger, configure_logging, InvocationContext, get_invocation_id

__all__ = [
    "ToolCache", "CacheEntry", "make_cache_key",
    "PerformanceMonitor", "ToolMetrics",
    "get_logger", "configure_logging", "InvocationContext", "get_invocation_id",
]
