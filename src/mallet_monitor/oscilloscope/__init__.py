"""
Dashboard package for TechPolo mallet telemetry.
"""

from .app import OscilloscopeApp, create_app

__all__ = ["OscilloscopeApp", "create_app"]
