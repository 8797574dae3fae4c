"""
Process bootstrap: logging, Sentry, wiring of the session core, and shutdown
hooks (SIGTERM / SIGINT / atexit) so no transaction holds a connection when
the process exits.
"""

import atexit
import logging
import signal
import sys
import threading
from functools import partial
from types import FrameType
from typing import Any

import sentry_sdk

from sqlbridge.core.config import Settings, settings
from sqlbridge.core.gateway import QueryResultCache, RateLimiter
from sqlbridge.core.performance import PerformanceMonitor
from sqlbridge.core.pool import ConnectionPool, connect
from sqlbridge.core.session import OperationalCounters, SessionManager, TransactionRegistry

_logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Log to stderr; stdout stays free for the protocol transport."""
    root = logging.getLogger()
    if not any(getattr(h, "_sqlbridge", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._sqlbridge = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level.upper())


def init_sentry(cfg: Settings) -> bool:
    if cfg.SENTRY_DSN and cfg.ENVIRONMENT != "local":
        sentry_sdk.init(dsn=str(cfg.SENTRY_DSN), environment=cfg.ENVIRONMENT)
        return True
    return False


def build_session_manager(cfg: Settings = settings) -> SessionManager:
    """Construct pool, registry, cache and rate limiter from ``cfg`` and inject them."""
    counters = OperationalCounters()
    acquire_timeout = cfg.POOL_ACQUIRE_TIMEOUT_MS / 1000
    pool = ConnectionPool(
        partial(connect, cfg),
        min_size=cfg.POOL_MIN,
        max_size=cfg.POOL_MAX,
        acquire_timeout=acquire_timeout,
        idle_timeout=cfg.POOL_IDLE_TIMEOUT_MS / 1000,
        max_lifetime=cfg.POOL_MAX_LIFETIME_SEC,
        reap_interval=cfg.POOL_REAP_INTERVAL_MS / 1000,
        product_type=cfg.DB_PRODUCT_TYPE,
        on_connect=counters.connection_opened,
        on_remove=counters.connection_removed,
    )
    transactions = TransactionRegistry(
        pool,
        cfg.DB_PRODUCT_TYPE,
        lock_timeout=acquire_timeout,
        max_age=cfg.TRANSACTION_TIMEOUT_SEC,
    )
    cache = QueryResultCache(
        cfg.CACHE_MAX_KEYS,
        cfg.CACHE_TTL_MS / 1000,
        enabled=cfg.CACHE_ENABLED,
    )
    rate_limiter = RateLimiter(
        cfg.RATE_LIMIT_MAX,
        cfg.RATE_LIMIT_WINDOW_MS / 1000,
        enabled=cfg.RATE_LIMIT_ENABLED,
    )
    return SessionManager(
        pool,
        transactions,
        product_type=cfg.DB_PRODUCT_TYPE,
        default_timeout_ms=cfg.MAX_QUERY_TIME_MS,
        cache=cache,
        rate_limiter=rate_limiter,
        counters=counters,
        monitor=PerformanceMonitor(),
        read_only_mode=cfg.READ_ONLY_MODE,
        sql_logging=cfg.SQL_LOGGING,
    )


def install_shutdown_handlers(manager: SessionManager) -> None:
    """Run manager.cleanup() on SIGTERM / SIGINT and at interpreter exit."""
    atexit.register(manager.cleanup)
    if threading.current_thread() is not threading.main_thread():
        _logger.warning("Signal handlers not installed: not on the main thread")
        return

    for signum in (signal.SIGTERM, signal.SIGINT):
        previous = signal.getsignal(signum)

        def _handler(sig: int, frame: FrameType | None, _previous: Any = previous) -> None:
            _logger.info("Received %s, shutting down", signal.Signals(sig).name)
            manager.cleanup()
            if callable(_previous):
                _previous(sig, frame)
            else:
                sys.exit(128 + sig)

        signal.signal(signum, _handler)


def create_session_manager(cfg: Settings = settings) -> SessionManager:
    """Configure logging and Sentry, build and start the core, hook shutdown."""
    configure_logging(cfg.LOG_LEVEL)
    init_sentry(cfg)
    manager = build_session_manager(cfg)
    manager.start()
    install_shutdown_handlers(manager)
    _logger.info(
        "Session core ready",
        extra={
            "product_type": cfg.DB_PRODUCT_TYPE.value,
            "pool_min": cfg.POOL_MIN,
            "pool_max": cfg.POOL_MAX,
            "read_only_mode": cfg.READ_ONLY_MODE,
        },
    )
    return manager
