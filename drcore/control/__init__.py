"""Operator-facing control surface: HTTP API and CLI client."""
from .api import create_app, start_control_api
from .cli import ControlClient

__all__ = ["ControlClient", "create_app", "start_control_api"]
