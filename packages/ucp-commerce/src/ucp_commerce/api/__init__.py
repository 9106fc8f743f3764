"""HTTP surface: FastAPI app, routers and the service container."""

from .dependencies import ServiceContainer, build_container, get_container
from .main import create_app

__all__ = ["ServiceContainer", "build_container", "create_app", "get_container"]
