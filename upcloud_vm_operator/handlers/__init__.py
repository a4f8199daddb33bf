"""Kopf handlers; importing this package registers them with kopf."""

from .controller import *  # noqa: F401, F403
