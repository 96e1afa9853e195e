"""
HTTP layer

- routes_documents: submission and issuance (write path)
- routes_public: verification, history and downloads (read path)
- errors: core exception -> HTTP status mapping
"""

from .errors import error_response, install_error_handlers
from .routes_documents import router as documents_router
from .routes_public import router as public_router

__all__ = [
    "documents_router",
    "public_router",
    "error_response",
    "install_error_handlers",
]
