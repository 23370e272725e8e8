"""Logging configuration for Stackcraft.

Provides configurable logging with:
- File-based logging with rotation
- Console output for real-time debugging
- Performance timing helpers for provider calls and engine phases

Environment Variables:
    STACKCRAFT_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
    STACKCRAFT_LOG_FILE: Path to log file (default: ~/.stackcraft/stackcraft.log)
    STACKCRAFT_LOG_MAX_SIZE: Max log file size in MB (default: 10)
    STACKCRAFT_LOG_BACKUPS: Number of backup files to keep (default: 5)

Usage:
    from mcp_infra_reconciler.utils.logging_config import setup_logging, timed

    setup_logging()  # Call once at startup

    @timed("plan")
    async def plan(self):
        ...

    async with timed_section("provider_create", address="aws_vpc.main"):
        ...
"""
import asyncio
import functools
import logging
import os
import time
from contextlib import asynccontextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Callable, Any

# Performance logger - separate from main logger for easy filtering
perf_logger = logging.getLogger("stackcraft.perf")
main_logger = logging.getLogger("stackcraft")

_configured = False


def get_log_level() -> int:
    """Get log level from environment."""
    level_str = os.environ.get("STACKCRAFT_LOG_LEVEL", "INFO").upper()
    return getattr(logging, level_str, logging.INFO)


def get_log_file() -> Path:
    """Get log file path from environment."""
    default_path = Path.home() / ".stackcraft" / "stackcraft.log"
    path_str = os.environ.get("STACKCRAFT_LOG_FILE", str(default_path))
    return Path(path_str)


def setup_logging(console: bool = True) -> None:
    """Configure logging for the application.

    Sets up:
    - Console handler (respects STACKCRAFT_LOG_LEVEL)
    - File handler with rotation (DEBUG level - captures everything)
    - Performance logger for timing metrics

    Calling it more than once is a no-op.
    """
    global _configured
    if _configured:
        return

    log_level = get_log_level()
    log_file = get_log_file()
    max_size_mb = int(os.environ.get("STACKCRAFT_LOG_MAX_SIZE", "10"))
    backup_count = int(os.environ.get("STACKCRAFT_LOG_BACKUPS", "5"))

    log_file.parent.mkdir(parents=True, exist_ok=True)

    main_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(name)-32s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    perf_format = logging.Formatter(
        "%(asctime)s.%(msecs)03d | PERF | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(main_format)

    perf_log_file = log_file.parent / "stackcraft-perf.log"
    perf_handler = RotatingFileHandler(
        perf_log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding="utf-8"
    )
    perf_handler.setLevel(logging.DEBUG)
    perf_handler.setFormatter(perf_format)

    handlers: list[logging.Handler] = [file_handler]
    if console:
        # stderr, so CLI/MCP stdout stays machine-readable
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(main_format)
        handlers.append(console_handler)

    root_logger = logging.getLogger("stackcraft")
    root_logger.setLevel(logging.DEBUG)  # Capture all, handlers filter
    for handler in handlers:
        root_logger.addHandler(handler)

    # Package modules log under their import path
    pkg_logger = logging.getLogger("mcp_infra_reconciler")
    pkg_logger.setLevel(logging.DEBUG)
    for handler in handlers:
        pkg_logger.addHandler(handler)

    perf_logger.setLevel(logging.DEBUG)
    perf_logger.addHandler(perf_handler)
    perf_logger.propagate = False

    _configured = True
    root_logger.info(f"Logging initialized: level={logging.getLevelName(log_level)}, file={log_file}")
    perf_logger.info(f"Performance logging to: {perf_log_file}")


def _format_perf(operation: str, address: Optional[str], elapsed: float, outcome: str) -> str:
    return f"{operation:20s} | {address or 'N/A':40s} | {elapsed:8.2f}ms | {outcome}"


def timed(operation: str, address: Optional[str] = None):
    """Decorator to log execution time of sync/async functions.

    Args:
        operation: Name of the operation (e.g., "plan", "apply", "compact")
        address: Optional resource address (can also be inferred from self.address)
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            addr = address
            if addr is None and args and hasattr(args[0], "address"):
                addr = args[0].address

            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.info(_format_perf(operation, addr, elapsed, "OK"))
                return result
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_format_perf(operation, addr, elapsed, f"FAIL: {e}"))
                raise

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            addr = address
            if addr is None and args and hasattr(args[0], "address"):
                addr = args[0].address

            start = time.perf_counter()
            try:
                result = func(*args, **kwargs)
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.info(_format_perf(operation, addr, elapsed, "OK"))
                return result
            except Exception as e:
                elapsed = (time.perf_counter() - start) * 1000
                perf_logger.warning(_format_perf(operation, addr, elapsed, f"FAIL: {e}"))
                raise

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


@asynccontextmanager
async def timed_section(operation: str, address: Optional[str] = None, **extra):
    """Async context manager for timing code sections.

    Usage:
        async with timed_section("provider_create", address="aws_vpc.main", attempt=1):
            await provider.create(...)
    """
    start = time.perf_counter()
    extra_str = " | ".join(f"{k}={v}" for k, v in extra.items()) if extra else ""

    try:
        yield
        elapsed = (time.perf_counter() - start) * 1000
        msg = _format_perf(operation, address, elapsed, "OK")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.info(msg)
    except BaseException as e:
        elapsed = (time.perf_counter() - start) * 1000
        msg = _format_perf(operation, address, elapsed, f"FAIL: {e!r}")
        if extra_str:
            msg += f" | {extra_str}"
        perf_logger.warning(msg)
        raise
