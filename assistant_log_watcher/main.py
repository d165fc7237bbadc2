"""Main entry point for assistant-log-watcher.

This module handles the command-line interface (CLI), configuration loading,
logging setup, and the main event loop. It wires an in-process
LogWatchServer to one FileWatcherClient and logs new messages as the
assistant writes them.

Key Responsibilities:
    - CLI Argument Parsing: Handles --base-path, --task-folder, --list-tasks, etc.
    - Signal Handling: Registers handlers for SIGINT/SIGTERM to ensure graceful shutdown.
    - Logging: Configures logging with rotation (10MB).
    - Startup/Shutdown Invariants: Ensures graceful exit with resource cleanup
      (closing the client, stopping every watch session) via atexit and finally blocks.
"""

from __future__ import annotations

import argparse
import atexit
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from types import FrameType
from typing import Dict, List, Optional, Sequence

# Logging configuration constants
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(name)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

try:
    from assistant_log_watcher import __version__
    from assistant_log_watcher.client import FileWatcherClient
    from assistant_log_watcher.config import Config, load_config
    from assistant_log_watcher.errors import ConfigError, LogWatcherError
    from assistant_log_watcher.models import Message
    from assistant_log_watcher.normalizer import MessageNormalizer
    from assistant_log_watcher.server import LogWatchServer
except ImportError as e:
    if "watchdog" in str(e):
        sys.exit(f"Error: Missing dependency: {e}. Please install required packages.")
    raise

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

PREVIEW_LENGTH = 120


def setup_logging(log_level: str, log_file: Optional[str]) -> None:
    """Configure the logging system.

    Sets up console logging (stdout) and optional file logging with rotation.

    Logging Practices:
        - **Levels**:
            - ``INFO``: Normal operations (sessions, connection states, new messages).
            - ``WARNING``: Recoverable issues (deleted log files, reconnects).
            - ``ERROR``: Failures (unreadable files, exhausted reconnect budget).
            - ``DEBUG``: Detailed diagnostics (raw events, rule matches).
        - **Format**: ``[asctime] [levelname] name: message``
        - **Rotation**: Log files are rotated at 10MB (keeping 5 backups).

    Args:
        log_level (str): The logging level (e.g., "DEBUG", "INFO", "WARNING", "ERROR").
        log_file (Optional[str]): Optional path to a log file.

    Raises:
        ValueError: If the provided log_level is not a valid logging level.
    """
    numeric_level = getattr(logging, log_level.upper(), None)
    if not isinstance(numeric_level, int):
        raise ValueError(f"Invalid log level: {log_level}")

    handlers: List[logging.Handler] = []
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    if log_file:
        try:
            # Rotate at 10MB, keep 5 backups
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except Exception as e:
            # Logging is not set up yet
            sys.stderr.write(f"Warning: Failed to setup log file '{log_file}': {e}\n")

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)


class MessageLogger:
    """``on_messages_updated`` callback that logs only messages not seen before.

    Log files are append-only, so the messages past the previously seen count
    for a source are the new ones. A shorter list (file rewritten) resets the
    count.
    """

    def __init__(self) -> None:
        self._seen: Dict[str, int] = {}
        self._lock = threading.Lock()

    def __call__(self, source: str, messages: List[Message]) -> None:
        with self._lock:
            seen = self._seen.get(source, 0)
            if len(messages) < seen:
                logger.info(f"{source} log was rewritten ({seen} -> {len(messages)} messages)")
                seen = 0
            new = messages[seen:]
            self._seen[source] = len(messages)
        for message in new:
            preview = message.text.replace("\n", " ")
            if len(preview) > PREVIEW_LENGTH:
                preview = preview[:PREVIEW_LENGTH] + "..."
            label = f"{message.role}/{message.type}"
            if message.is_error:
                logger.warning(f"[{source}] {label}: {message.error_text or preview}")
            else:
                logger.info(f"[{source}] {label}: {preview}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="assistant-log-watcher",
        description="Follow an AI coding assistant's task logs and print new messages live.",
    )
    parser.add_argument("--base-path", type=str, default=None, help="Directory holding the task folders.")
    parser.add_argument(
        "--task-folder", type=str, default=None, help="Task folder to follow (default: newest)."
    )
    parser.add_argument(
        "--list-tasks", action="store_true", help="List the task folders under the base path and exit."
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging (overrides --log-level)."
    )
    parser.add_argument("--log-file", type=str, default=None, help="Path to the log file.")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR). Default: INFO",
    )
    parser.add_argument(
        "--watch-debounce-seconds",
        type=float,
        default=None,
        help="Quiet period before a file change is broadcast (default: 0.5).",
    )
    parser.add_argument(
        "--refetch-debounce-seconds",
        type=float,
        default=None,
        help="Quiet period before the client re-reads the logs (default: 1.0).",
    )
    parser.add_argument(
        "--max-reconnect-attempts",
        type=int,
        default=None,
        help="Consecutive connection failures before giving up (default: 5).",
    )
    parser.add_argument(
        "--reconnect-delay", type=float, default=None, help="Base reconnect delay in seconds (default: 1.0)."
    )
    parser.add_argument(
        "--reconnect-delay-max",
        type=float,
        default=None,
        help="Maximum reconnect delay in seconds (default: 5.0).",
    )
    parser.add_argument(
        "--cache-size", type=int, default=None, help="Normalization cache capacity (default: 1000)."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def resolve_task_folder(server: LogWatchServer, config: Config) -> str:
    """Return the configured task folder, or the newest one under the base path.

    Raises:
        ConfigError: No base path is set, or there are no task folders.
    """
    if not config.base_path:
        raise ConfigError("A base path is required (--base-path or LOG_WATCHER_BASE_PATH)")
    if config.task_folder:
        return config.task_folder
    result = server.get_subfolders(config.base_path)
    if not result.success or not result.folders:
        raise ConfigError(f"No task folders found in {config.base_path}")
    logger.info(f"No task folder configured, following newest: {result.folders[0]}")
    return result.folders[0]


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Execute the main application logic.

    Parse command-line arguments, load configuration, set up logging, start
    the watcher and block until SIGINT/SIGTERM.

    Raises:
        SystemExit: If configuration is invalid, or fatal errors occur during
            startup (code 1).

    Example:
        $ assistant-log-watcher --base-path ~/.assistant/tasks --log-level DEBUG
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    # Bootstrap logging to capture config loading events
    bootstrap_handler = logging.StreamHandler(sys.stdout)
    bootstrap_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    bootstrap_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=bootstrap_level, handlers=[bootstrap_handler], force=True)

    cli_args = vars(args)
    list_tasks = cli_args.pop("list_tasks", False)

    try:
        config = load_config(cli_args)
        logger.debug(f"Configuration loaded: {config}")
        setup_logging(config.log_level, config.log_file)
    except ValueError as e:
        sys.exit(f"Configuration Error: {e}")
    except Exception as e:
        sys.exit(f"Startup Error: {e}")

    server = LogWatchServer(debounce_seconds=config.watch_debounce_seconds)

    if list_tasks:
        if not config.base_path:
            sys.exit("Configuration Error: A base path is required to list tasks")
        result = server.get_subfolders(config.base_path)
        if not result.success:
            sys.exit(f"Error: {result.error}")
        for folder in result.folders:
            print(folder)
        return

    try:
        task_folder = resolve_task_folder(server, config)
    except ConfigError as e:
        sys.exit(f"Configuration Error: {e}")

    logger.info(f"Starting assistant-log-watcher v{__version__} (PID: {os.getpid()})...")

    client: Optional[FileWatcherClient] = None

    def cleanup() -> None:
        """Close the client and stop every watch session; errors are logged."""
        if client:
            try:
                client.close()
            except Exception as e:
                logger.error(f"Error closing client: {e}")
        try:
            server.shutdown()
        except Exception as e:
            logger.error(f"Error shutting down server: {e}")

    atexit.register(cleanup)

    stop_event = threading.Event()

    def signal_handler(sig: int, frame: Optional[FrameType]) -> None:
        sig_name = signal.Signals(sig).name
        logger.info(f"Received signal {sig_name}, shutting down...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        client = FileWatcherClient(
            config.base_path,
            task_folder,
            server.connect_transport(),
            validator=server,
            reader=server,
            on_messages_updated=MessageLogger(),
            normalizer=MessageNormalizer(cache_size=config.cache_size),
            max_attempts=config.max_reconnect_attempts,
            reconnect_delay=config.reconnect_delay,
            reconnect_delay_max=config.reconnect_delay_max,
            refetch_debounce_seconds=config.refetch_debounce_seconds,
        )
        client.start()
        logger.info(f"Following {client.key}")

        # Main loop: block until the signal handler sets the event
        stop_event.wait()

    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt received, stopping...")
    except LogWatcherError as e:
        logger.error(f"Failed to start: {e}")
        sys.exit(1)
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        cleanup()
        atexit.unregister(cleanup)


if __name__ == "__main__":
    main()
