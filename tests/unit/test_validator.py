from __future__ import annotations

import pytest

from device_intake.identifier.validator import (
    BATCH_DUPLICATE_ERROR,
    CLEANED_WARNING,
    EMPTY_ERROR,
    PRECISION_WARNING,
    SCIENTIFIC_WARNING,
    format_validation_message,
    generate_review_flags,
    sanitize_identifier,
    validate,
    validate_batch,
)


def test_scientific_display_with_stored_number_is_valid_with_one_warning():
    result = validate("3.51454E+14", 351454482579210)
    assert result.is_valid
    assert result.sanitized == "351454482579210"
    assert result.warnings == (SCIENTIFIC_WARNING,)


def test_scientific_text_without_stored_number_flags_precision_loss():
    result = validate("3.51454E+14")
    assert result.is_valid
    assert result.sanitized == "351454000000000"
    assert result.warnings == (SCIENTIFIC_WARNING, PRECISION_WARNING)


@pytest.mark.parametrize("value", [351454482579210, 351454482579210.0, "351454482579210", " 351454482579210 "])
def test_plain_identifier_is_valid_without_warnings(value):
    result = validate(value)
    assert result.is_valid
    assert result.sanitized == "351454482579210"
    assert result.warnings == ()


def test_fourteen_digit_identifier_is_padded_with_warning():
    result = validate("35145448257921")
    assert result.is_valid
    assert result.sanitized == "351454482579210"
    assert CLEANED_WARNING in result.warnings


def test_separators_are_stripped():
    result = validate("35-1454-4825-7921-0")
    assert result.is_valid
    assert result.sanitized == "351454482579210"


@pytest.mark.parametrize("value", [None, "", "   ", "n/a"])
def test_empty_values_report_only_the_empty_error(value):
    result = validate(value)
    assert not result.is_valid
    assert result.errors == (EMPTY_ERROR,)
    assert result.sanitized is None


def test_wrong_prefix_and_length_are_both_reported():
    result = validate("99123")
    assert result.errors == ("IMEI must be 15 digits (found 5)", "IMEI must start with 35")


def test_twelve_digits_are_not_padded():
    result = validate("351454482579")
    assert result.sanitized == "351454482579"
    assert result.errors == ("IMEI must be 15 digits (found 12)",)


def test_fourteen_digit_number_with_wrong_prefix():
    result = validate(12345678901234)
    assert result.sanitized == "12345678901234"
    assert result.errors == ("IMEI must be 15 digits (found 14)", "IMEI must start with 35")


def test_over_long_value_is_not_truncated():
    result = validate("3514544825792100")
    assert result.sanitized == "3514544825792100"
    assert result.errors == ("IMEI must be 15 digits (found 16)",)


def test_wrong_prefix_full_length():
    result = validate("123456789012345")
    assert result.errors == ("IMEI must start with 35",)


def test_custom_prefix():
    assert validate("441454482579210", prefix="44").is_valid
    assert not validate("351454482579210", prefix="44").is_valid


def test_sanitize_uses_numeric_value_only_for_scientific_text():
    recovered = sanitize_identifier("351454482579210", numeric_value=999)
    assert recovered is not None and recovered.digits == "351454482579210"
    assert sanitize_identifier(None) is None


@pytest.mark.parametrize(
    "raw, numeric",
    [
        ("351454482579210", None),
        (351454482579210, None),
        ("3.51454E+14", None),
        ("3.51454E+14", 351454482579210),
        ("35145448257921", None),
        (None, None),
        ("", None),
        ("99123", None),
        (351454482579210.0, None),
    ],
)
def test_validate_is_idempotent(raw, numeric):
    assert validate(raw, numeric) == validate(raw, numeric)


def test_validate_batch_keeps_no_state_between_calls():
    values = ["351454482579210", "351454482579210", "bad", "3.51454E+14"]
    first = validate_batch(values)
    second = validate_batch(values)
    assert first == second
    assert second.summary.duplicate_count == 1
    assert [i for i, _ in second.valid] == [1, 4]


def test_validate_batch_categorizes_and_flags_repeats():
    batch = validate_batch(["351454482579210", "351454482579210", "bad", "351454482579228"])
    assert [i for i, _ in batch.valid] == [1, 4]
    assert [i for i, _ in batch.invalid] == [3]
    assert [i for i, _ in batch.duplicates] == [2]
    assert BATCH_DUPLICATE_ERROR in batch.duplicates[0][1].errors
    assert batch.summary.total == 4
    assert batch.summary.valid_count == 2
    assert batch.summary.invalid_count == 1
    assert batch.summary.duplicate_count == 1


def test_validate_batch_padded_repeat_counts_as_duplicate():
    batch = validate_batch(["351454482579210", "35145448257921"])
    assert batch.summary.duplicate_count == 1


def test_validate_batch_numeric_values_parallel():
    batch = validate_batch(["3.51454E+14"], [351454482579210])
    assert batch.valid[0][1].sanitized == "351454482579210"
    with pytest.raises(ValueError):
        validate_batch(["a", "b"], [1])


def test_format_validation_message():
    assert format_validation_message(validate("351454482579210")) == "Valid IMEI: 351454482579210"
    assert format_validation_message(validate("3.51454E+14", 351454482579210)) == (
        f"Valid IMEI: 351454482579210 ({SCIENTIFIC_WARNING})"
    )
    assert format_validation_message(validate("99123")) == (
        "Invalid IMEI: 99123 - IMEI must be 15 digits (found 5), IMEI must start with 35"
    )


def test_review_flags():
    assert generate_review_flags(validate("351454482579210")) == []
    flags = generate_review_flags(validate("3.51454E+14"))
    assert [f.type for f in flags] == ["IMEI_FORMATTING_ISSUE"]
    assert flags[0].block_approval is False
    flags = generate_review_flags(validate("99123"))
    assert flags[0].severity == "ERROR" and flags[0].block_approval is True


def test_result_to_dict():
    d = validate(351454482579210).to_dict()
    assert d == {
        "original": "351454482579210",
        "sanitized": "351454482579210",
        "is_valid": True,
        "errors": [],
        "warnings": [],
    }
