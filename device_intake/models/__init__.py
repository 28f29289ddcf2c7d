"""Domain models for the device intake tool.

This package contains the domain model classes shared by extraction,
validation, persistence and the sync retry queue.
"""

from .cell import CellType, RawCell
from .config_models import DatabaseConfig, DuplicateConfig, ExtractionConfig, IntakeConfig, RetryConfig
from .device_record import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    BatchSummary,
    BatchValidation,
    DeviceRecord,
    DeviceStatus,
    ValidationResult,
)
from .duplicate_check import DuplicateCheckResult
from .error_record import ErrorRecord
from .processing_result import FileStat, IntakeResult, ProcessingResult, SubmissionCounts
from .retry_entry import RetryQueueEntry, RetryStatus, SweepResult

__all__ = [
    # Configuration models
    "DatabaseConfig",
    "DuplicateConfig",
    "ExtractionConfig",
    "IntakeConfig",
    "RetryConfig",
    # Extraction models
    "CellType",
    "RawCell",
    "DeviceRecord",
    "DeviceStatus",
    "ValidationResult",
    "BatchSummary",
    "BatchValidation",
    "LIVE_STATUSES",
    "TERMINAL_STATUSES",
    # Persistence / queue models
    "DuplicateCheckResult",
    "RetryQueueEntry",
    "RetryStatus",
    "SweepResult",
    "SubmissionCounts",
    "IntakeResult",
    "FileStat",
    "ProcessingResult",
    "ErrorRecord",
]
