"""
HTTP and WebSocket API

FastAPI router exposing workflow storage, validation, code generation and
execution.
"""

from .routes import router

__all__ = ["router"]
