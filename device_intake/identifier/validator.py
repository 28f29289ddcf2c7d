from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ..models.device_record import BatchSummary, BatchValidation, ValidationResult
from .reconstructor import (
    IDENTIFIER_LENGTH,
    IDENTIFIER_PREFIX,
    ReconstructedIdentifier,
    as_text,
    clean_identifier,
    digits_only,
    expand_scientific,
    is_scientific,
    plain_digits,
    reconstruct_from_digits,
)

"""IMEI validation and sanitization.

Policy: a valid identifier is exactly 15 digits and starts with "35".

Errors block automated acceptance (the device goes to manual review);
warnings mark values that were repaired from spreadsheet formatting and are
auto-acceptable but flagged for optional review. Validity and "has warnings"
are orthogonal.

validate() keeps no state between calls; validate_batch() tracks sanitized
identifiers seen earlier in the same list and reports later repeats as
duplicates-within-batch.
"""

__all__ = [
    "EMPTY_ERROR",
    "LENGTH_ERROR",
    "PREFIX_ERROR",
    "NON_DIGIT_ERROR",
    "BATCH_DUPLICATE_ERROR",
    "SCIENTIFIC_WARNING",
    "DECIMAL_WARNING",
    "CLEANED_WARNING",
    "PRECISION_WARNING",
    "ReviewFlag",
    "sanitize_identifier",
    "validate",
    "validate_batch",
    "format_validation_message",
    "generate_review_flags",
]

EMPTY_ERROR = "IMEI is empty or null"
LENGTH_ERROR = "IMEI must be 15 digits (found {length})"
PREFIX_ERROR = "IMEI must start with {prefix}"
NON_DIGIT_ERROR = "IMEI must contain only digits"
BATCH_DUPLICATE_ERROR = "Duplicate IMEI within this submission"

SCIENTIFIC_WARNING = "Original value was in scientific notation - converted automatically"
DECIMAL_WARNING = "Original value contained decimal point - removed"
CLEANED_WARNING = "IMEI was cleaned from spreadsheet formatting"
PRECISION_WARNING = "Possible precision loss in scientific notation - verify IMEI against the device"

_DIGITS_RE = re.compile(r"^[0-9]+$")


@dataclass(frozen=True)
class ReviewFlag:
    severity: str  # ERROR / WARNING
    type: str
    message: str
    requires_review: bool
    block_approval: bool


def sanitize_identifier(
    raw_value: Any,
    numeric_value: Any = None,
    prefix: str = IDENTIFIER_PREFIX,
) -> ReconstructedIdentifier | None:
    """Sanitize a raw identifier of any shape.

    Scientific notation goes through the reconstruction path, using
    ``numeric_value`` (the full-precision stored number) when the caller has
    it and the exact expansion of the text otherwise. Everything else is
    digit-stripped with the 13-14 digit pad rule. Over-long values are kept
    as they are so that the length check reports them.
    """
    text = as_text(raw_value).strip()
    if not text:
        return None
    if is_scientific(text):
        if numeric_value is not None:
            candidate = plain_digits(numeric_value)
        else:
            candidate = expand_scientific(text)
        return reconstruct_from_digits(candidate, prefix)
    cleaned = clean_identifier(text, prefix)
    return ReconstructedIdentifier(cleaned, False, "text") if cleaned else None


def validate(raw_value: Any, numeric_value: Any = None, *, prefix: str = IDENTIFIER_PREFIX) -> ValidationResult:
    """Validate one identifier.

    Parameters
    ----------
    raw_value: number, numeric string, scientific-notation string, or None
    numeric_value: optional full-precision stored number behind a
        scientific-notation display string
    prefix: required identifier prefix
    """
    text = as_text(raw_value).strip()
    recovered = sanitize_identifier(raw_value, numeric_value, prefix)
    sanitized = recovered.digits if recovered else None

    if not sanitized:
        return ValidationResult(original=raw_value, sanitized=sanitized, errors=(EMPTY_ERROR,))

    errors: list[str] = []
    if len(sanitized) != IDENTIFIER_LENGTH:
        errors.append(LENGTH_ERROR.format(length=len(sanitized)))
    if not sanitized.startswith(prefix):
        errors.append(PREFIX_ERROR.format(prefix=prefix))
    if not _DIGITS_RE.match(sanitized):
        errors.append(NON_DIGIT_ERROR)

    warnings: list[str] = []
    if is_scientific(text):
        # 指数表記の小数点・整形は変換警告に含める
        warnings.append(SCIENTIFIC_WARNING)
        if recovered is not None and recovered.precision_loss:
            warnings.append(PRECISION_WARNING)
    else:
        if "." in text:
            warnings.append(DECIMAL_WARNING)
        if sanitized != digits_only(text):
            warnings.append(CLEANED_WARNING)

    return ValidationResult(
        original=raw_value,
        sanitized=sanitized,
        errors=tuple(errors),
        warnings=tuple(warnings),
    )


def validate_batch(
    raw_values: Sequence[Any],
    numeric_values: Sequence[Any] | None = None,
    *,
    prefix: str = IDENTIFIER_PREFIX,
) -> BatchValidation:
    """Validate and categorize a list of identifiers.

    A later occurrence of an identifier that was already accepted as valid
    earlier in the list is classified as a duplicate (with an extra error),
    not as valid. Invalid values never enter the seen set.
    """
    if numeric_values is not None and len(numeric_values) != len(raw_values):
        raise ValueError("numeric_values must be parallel to raw_values")

    valid: list[tuple[int, ValidationResult]] = []
    invalid: list[tuple[int, ValidationResult]] = []
    duplicates: list[tuple[int, ValidationResult]] = []
    seen: set[str] = set()

    for idx, raw in enumerate(raw_values, start=1):
        numeric = numeric_values[idx - 1] if numeric_values is not None else None
        result = validate(raw, numeric, prefix=prefix)
        if not result.is_valid:
            invalid.append((idx, result))
            continue
        key = result.sanitized or ""
        if key in seen:
            duplicates.append(
                (
                    idx,
                    ValidationResult(
                        original=result.original,
                        sanitized=result.sanitized,
                        errors=result.errors + (BATCH_DUPLICATE_ERROR,),
                        warnings=result.warnings,
                    ),
                )
            )
        else:
            seen.add(key)
            valid.append((idx, result))

    return BatchValidation(
        valid=valid,
        invalid=invalid,
        duplicates=duplicates,
        summary=BatchSummary(
            total=len(raw_values),
            valid_count=len(valid),
            invalid_count=len(invalid),
            duplicate_count=len(duplicates),
        ),
    )


def format_validation_message(result: ValidationResult) -> str:
    if result.is_valid:
        msg = f"Valid IMEI: {result.sanitized}"
        if result.warnings:
            msg += f" ({', '.join(result.warnings)})"
        return msg
    return f"Invalid IMEI: {as_text(result.original)} - {', '.join(result.errors)}"


def generate_review_flags(result: ValidationResult) -> list[ReviewFlag]:
    """Admin review flags: invalid blocks approval, warnings only ask for a look."""
    flags: list[ReviewFlag] = []
    if not result.is_valid:
        flags.append(
            ReviewFlag(
                severity="ERROR",
                type="INVALID_IMEI",
                message="; ".join(result.errors),
                requires_review=True,
                block_approval=True,
            )
        )
    if result.warnings:
        flags.append(
            ReviewFlag(
                severity="WARNING",
                type="IMEI_FORMATTING_ISSUE",
                message="; ".join(result.warnings),
                requires_review=True,
                block_approval=False,
            )
        )
    return flags
