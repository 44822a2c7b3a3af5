"""
CLI Tools for Testing and Development
"""

from .plan_cli import app

__all__ = [
    "app"
]
