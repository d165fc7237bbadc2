"""Live viewer backend for AI coding-assistant log files.

This package watches the JSON message logs an assistant writes into a task
folder, debounces filesystem changes, fans change notifications out to
subscribed clients and normalizes the raw log records into canonical messages.
"""

__version__ = "0.1.0"
