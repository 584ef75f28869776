"""
Matching Service API Routers
FastAPI router modules for the matching worker deployment.
"""
from backend.api import health

__all__ = [
    "health",
]
