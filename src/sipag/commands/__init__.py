"""Command implementations exposed by the sipag CLI."""

from .drain import clear_drain, request_drain
from .status import show_status
from .work import start_worker

__all__ = [
    "clear_drain",
    "request_drain",
    "show_status",
    "start_worker",
]
