"""
Core package exposing the FastAPI application of the Format asset service.
Importing this package ensures all route modules are loaded so route
definitions attach to the shared FastAPI application.
"""

# Import order matters: ensure app state is initialized before routes.
from . import app_state  # noqa: F401

# Route modules register themselves upon import.
from . import service_routes  # noqa: F401
