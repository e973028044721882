"""Routers package."""

from . import (
    health,
    auth,
    generate,
    user,
    subscription,
    billing,
    chat,
    upload,
)
