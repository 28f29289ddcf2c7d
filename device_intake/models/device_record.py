from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

"""DeviceRecord and ValidationResult models.

DeviceRecord is the primary extracted entity: one per qualifying spreadsheet
row. The row extractor builds it, the identifier validator attaches its
result, and after that it is never mutated (frozen dataclass; validation is
attached through ``with_validation`` which returns a new instance).
"""

__all__ = [
    "DeviceStatus",
    "ValidationResult",
    "BatchValidation",
    "BatchSummary",
    "DeviceRecord",
    "LIVE_STATUSES",
    "TERMINAL_STATUSES",
]


class DeviceStatus(Enum):
    """Review lifecycle of a persisted device.

    PENDING → (UNDER_REVIEW | INFO_REQUESTED) → (APPROVED | DENIED) → SYNCED

    Only the initial assignment happens in this package; the rest is driven
    by the admin workflow.
    """
    PENDING = "PENDING"
    UNDER_REVIEW = "UNDER_REVIEW"
    INFO_REQUESTED = "INFO_REQUESTED"
    APPROVED = "APPROVED"
    DENIED = "DENIED"
    SYNCED = "SYNCED"


# 重複判定対象 (非終端状態)
LIVE_STATUSES = frozenset(
    {
        DeviceStatus.PENDING,
        DeviceStatus.UNDER_REVIEW,
        DeviceStatus.APPROVED,
        DeviceStatus.INFO_REQUESTED,
    }
)
TERMINAL_STATUSES = frozenset({DeviceStatus.DENIED, DeviceStatus.SYNCED})


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one identifier.

    ``sanitized`` is always computed, even for invalid input, so review
    tooling can show what the value would have become. ``errors`` block
    automated acceptance, ``warnings`` do not.
    """
    original: Any
    sanitized: str | None
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)

    def to_dict(self) -> dict[str, Any]:
        return {
            "original": None if self.original is None else str(self.original),
            "sanitized": self.sanitized,
            "is_valid": self.is_valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class BatchSummary:
    total: int = 0
    valid_count: int = 0
    invalid_count: int = 0
    duplicate_count: int = 0


@dataclass(frozen=True)
class BatchValidation:
    """Result of validating a list of identifiers.

    ``index`` in each tuple is 1-based, matching how the list was submitted.
    """
    valid: list[tuple[int, ValidationResult]] = field(default_factory=list)
    invalid: list[tuple[int, ValidationResult]] = field(default_factory=list)
    duplicates: list[tuple[int, ValidationResult]] = field(default_factory=list)
    summary: BatchSummary = field(default_factory=BatchSummary)


@dataclass(frozen=True)
class DeviceRecord:
    """One device extracted from a submission spreadsheet.

    Attributes:
        identifier: reconstructed digit string (may be invalid; see validation)
        identifier_raw: value as read from the cell (display text preferred)
        identifier_source_type: stored cell type the identifier came from
        row_number: 1-based spreadsheet row (for reviewer messages)
        precision_loss: reconstructor flagged the value as numerically lossy
        identifier_numeric: stored number behind the cell (number cells only)
    """
    identifier: str
    identifier_raw: Any
    identifier_source_type: str
    row_number: int
    model: str | None = None
    storage: str | None = None
    condition: str | None = None
    issue_description: str | None = None
    issue_category: str | None = None
    requested_action: str | None = None
    unit_price: float | str | None = None
    repair_cost: float | str | None = None
    precision_loss: bool = False
    identifier_numeric: Any = None
    validation: ValidationResult | None = None

    def with_validation(self, validation: ValidationResult) -> DeviceRecord:
        if self.validation is not None:
            raise ValueError(f"row {self.row_number}: validation already attached")
        # frozen のため新インスタンスを返す
        return replace(self, validation=validation)

    @property
    def is_valid(self) -> bool:
        return self.validation is not None and self.validation.is_valid

    def descriptive_fields(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "storage": self.storage,
            "condition": self.condition,
            "issue_description": self.issue_description,
            "issue_category": self.issue_category,
            "requested_action": self.requested_action,
            "unit_price": self.unit_price,
            "repair_cost": self.repair_cost,
        }
