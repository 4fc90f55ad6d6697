"""
Domain utilities for the gateway service.

Request processing that does not belong to adapters or transport-specific
layers: the upload relay pipeline and the audit log it writes to.
"""

from .audit_log import AuditLog, AuditRecord
from .upload_pipeline import (
    StagedImageResponse,
    StagedUpload,
    UploadPipeline,
    sanitize_filename,
)

__all__ = [
    "AuditLog",
    "AuditRecord",
    "StagedImageResponse",
    "StagedUpload",
    "UploadPipeline",
    "sanitize_filename",
]
