"""Routers package."""

from . import (
    health,
    auth,
    billing,
    subscription,
    generation,
)
