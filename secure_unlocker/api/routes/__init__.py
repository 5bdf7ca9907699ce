"""
API Routes
"""
from secure_unlocker.api.routes import volumes

__all__ = ["volumes"]
