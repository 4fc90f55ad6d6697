"""
Adapters package for the gateway service.

HTTP client wrappers for external dependencies. Adapters encapsulate base
URLs, request shapes, connection pooling and the mapping of transport
failures onto shared errors. Keep them thin and side-effect free outside of
explicit calls.
"""

from .backend_client import (
    BackendClient,
    BackendImage,
    TransformParams,
    DEFAULT_PARAMS,
    local_reference,
)

__all__ = [
    "BackendClient",
    "BackendImage",
    "TransformParams",
    "DEFAULT_PARAMS",
    "local_reference",
]
