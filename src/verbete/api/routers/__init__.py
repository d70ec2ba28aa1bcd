"""Verbete API routers.

- author: Token-gated endpoints for anonymous authors
"""

from verbete.api.routers.author import router as author_router

__all__ = ["author_router"]
