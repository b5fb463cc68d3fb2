"""
Web server module for video consultation sessions.

Usage:
    from videoconsult.web.server import app

    # Run with uvicorn:
    # uvicorn videoconsult.web.server:app --host 0.0.0.0 --port 8000
"""

from videoconsult.web.server import app

__all__ = ["app"]
