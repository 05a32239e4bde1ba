"""Nesema practice platform API."""

APP_NAME = "Nesema"

__version__ = "0.4.0"
