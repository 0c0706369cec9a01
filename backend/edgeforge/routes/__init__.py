"""HTTP routers. Each reads its services from request.app.state."""

from . import builds, settings, sites

__all__ = ["builds", "settings", "sites"]
