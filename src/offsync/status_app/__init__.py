"""
Status App Module

Provides a local HTTP front end for inspecting and driving the engine.
"""

from .app import create_app, start_status_app

__all__ = ['create_app', 'start_status_app']
