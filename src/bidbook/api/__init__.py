"""
API package exposing FastAPI routes for the settlement engine.

The ``api`` package groups together all HTTP endpoint definitions and
their dependencies. See ``main.py`` for application creation and
``routers`` for individual route modules.
"""
