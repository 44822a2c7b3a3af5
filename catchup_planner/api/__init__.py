"""
HTTP API
"""

from .plans import router, availability_router, register_exception_handlers

__all__ = [
    "router",
    "availability_router",
    "register_exception_handlers"
]
