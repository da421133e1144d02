# API Package
from .sync_routes import sync_bp

__all__ = ['sync_bp']
