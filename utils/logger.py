"""
Console logging for the farm bot.

Lines are printed with a timestamp and a bracketed tag. External observers
(dashboards, log buffers) can subscribe with add_log_listener.
"""

from datetime import datetime
from typing import Callable, List

LogListener = Callable[[str, str, bool], None]

_listeners: List[LogListener] = []


def add_log_listener(listener: LogListener):
    """Register a callable receiving (tag, message, is_warning) for every line."""
    if listener not in _listeners:
        _listeners.append(listener)


def remove_log_listener(listener: LogListener):
    if listener in _listeners:
        _listeners.remove(listener)


def _emit(tag: str, message: str, is_warning: bool):
    timestamp = datetime.now().strftime("%H:%M:%S")
    marker = " WARNING:" if is_warning else ""
    print(f"[{timestamp}] [{tag}]{marker} {message}")

    for listener in list(_listeners):
        try:
            listener(tag, message, is_warning)
        except Exception as e:
            print(f"[{timestamp}] [logger] listener failed: {e}")


def log(tag: str, message: str):
    _emit(tag, message, False)


def log_warn(tag: str, message: str):
    _emit(tag, message, True)
