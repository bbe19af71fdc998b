"""Main entry point for the constraint controller."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from kubernetes import config as kube_config
from kubernetes.config.config_exception import ConfigException

from .config import Config, ConfigurationError
from .manager import ControllerManager
from .metrics import start_metrics_server

# LogRecord attributes that are not user supplied extras
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(json_output: bool = True, level: int = logging.INFO) -> None:
    """Configure structured logging to stdout."""
    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the Kubernetes client and the watch framework
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kopf").setLevel(logging.WARNING)


def load_kubernetes_config() -> None:
    """Use the in-cluster service account, falling back to the local kubeconfig."""
    try:
        kube_config.load_incluster_config()
    except ConfigException:
        kube_config.load_kube_config()


async def main(config: Config | None = None) -> int:
    """Run the controller.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    logger = logging.getLogger(__name__)

    if config is None:
        try:
            config = Config.from_env()
        except ConfigurationError as e:
            setup_logging()
            logger.error("Configuration error", extra={"error": str(e)})
            return 1
        setup_logging(json_output=config.enable_audit_logging)

    logger.info(
        "Starting constraint controller",
        extra={
            "kinds": list(config.constraint_kinds),
            "group": config.group,
            "version": config.version,
            "workers_per_kind": config.max_concurrent_reconciles,
        },
    )

    try:
        load_kubernetes_config()
    except ConfigException as e:
        logger.error("Kubernetes client configuration failed", extra={"error": str(e)})
        return 1

    try:
        manager = ControllerManager(config)
    except Exception as e:
        logger.error(
            "Failed to initialize controller manager",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return 1

    if config.metrics_port:
        try:
            start_metrics_server(config.metrics_port)
        except OSError as e:
            logger.error(
                "Failed to start metrics endpoint",
                extra={"error": str(e), "port": config.metrics_port},
            )
            return 1

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await manager.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Controller stopped")
    return 0


def run() -> None:
    """Entry point for running the controller directly."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
