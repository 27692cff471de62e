"""Compliance export job pipeline."""

from practicegate.exports.authorization import ExportAuthorizer, OwnerOrElevatedAuthorizer
from practicegate.exports.models import ExportFormat, ExportJob, ExportStatus, ExportType
from practicegate.exports.pipeline import ExportPipeline

__all__ = [
    "ExportAuthorizer",
    "ExportFormat",
    "ExportJob",
    "ExportPipeline",
    "ExportStatus",
    "ExportType",
    "OwnerOrElevatedAuthorizer",
]
