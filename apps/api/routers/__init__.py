"""Routers package."""

from . import (
    health,
    credits,
)
