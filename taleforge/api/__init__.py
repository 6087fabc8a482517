"""
HTTP surface for TaleForge.
"""

from .app import build_default_pipeline, create_app

__all__ = ["build_default_pipeline", "create_app"]
