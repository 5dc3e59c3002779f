"""Deferred validation for scraped records.

DeferredValidation holds unvalidated field values and a pydantic model
type. Validation happens when confirm() is called, and any pydantic
failure is translated into a RecordValidationError whose kind tells the
run report why the candidate was rejected.
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ValidationError

from peru_prices.common.exceptions import (
    RecordValidationError,
    RecordValidationErrorKind,
)

T = TypeVar("T", bound=BaseModel)

# pydantic error type -> rejection kind
ERROR_KINDS: dict[str, RecordValidationErrorKind] = {
    "out_of_range": RecordValidationErrorKind.OUT_OF_RANGE,
    "less_than_equal": RecordValidationErrorKind.OUT_OF_RANGE,
    "less_than": RecordValidationErrorKind.OUT_OF_RANGE,
    "greater_than": RecordValidationErrorKind.UNPARSABLE_NUMBER,
    "greater_than_equal": RecordValidationErrorKind.UNPARSABLE_NUMBER,
    "decimal_parsing": RecordValidationErrorKind.UNPARSABLE_NUMBER,
    "decimal_type": RecordValidationErrorKind.UNPARSABLE_NUMBER,
    "finite_number": RecordValidationErrorKind.UNPARSABLE_NUMBER,
    "missing": RecordValidationErrorKind.MISSING_REQUIRED_FIELD,
    "string_too_short": RecordValidationErrorKind.MISSING_REQUIRED_FIELD,
    "string_type": RecordValidationErrorKind.MISSING_REQUIRED_FIELD,
    "string_pattern_mismatch": (
        RecordValidationErrorKind.MISSING_REQUIRED_FIELD
    ),
    "date_parsing": RecordValidationErrorKind.MISSING_REQUIRED_FIELD,
    "date_from_datetime_parsing": (
        RecordValidationErrorKind.MISSING_REQUIRED_FIELD
    ),
    "datetime_parsing": RecordValidationErrorKind.MISSING_REQUIRED_FIELD,
}


def classify_errors(errors: list[dict[str, Any]]) -> RecordValidationErrorKind:
    """Pick the rejection kind for a list of pydantic errors.

    The first error with a known type wins; unknown types are treated as a
    missing required field.
    """
    for err in errors:
        kind = ERROR_KINDS.get(err.get("type", ""))
        if kind is not None:
            return kind
    return RecordValidationErrorKind.MISSING_REQUIRED_FIELD


class DeferredValidation(Generic[T]):
    """Wrapper for unvalidated data that validates on confirm().

    Example:
        deferred = PriceRecord.raw(position=3, target_id="metro-lacteos", ...)
        record = deferred.confirm()  # Raises RecordValidationError
    """

    def __init__(
        self,
        model_class: type[T],
        data: dict[str, Any],
        target_id: str = "",
        position: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize deferred validation.

        Args:
            model_class: The pydantic model class to validate against.
            data: Raw field values (not validated).
            target_id: Target the data came from, for error reporting.
            position: Fragment index the data came from.
            context: Validation context passed to model_validate.
        """
        self._model_class = model_class
        self._data = data
        self._target_id = target_id
        self._position = position
        self._context = context or {}

    def confirm(self) -> T:
        """Validate the data and return the validated model instance.

        Raises:
            RecordValidationError: If validation fails.
        """
        try:
            return self._model_class.model_validate(
                self._data, context=self._context
            )
        except ValidationError as e:
            errors_list = [dict(err) for err in e.errors()]
            first = errors_list[0]
            field = ".".join(str(p) for p in first.get("loc", ())) or None
            summary = ", ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in errors_list
            )
            raise RecordValidationError(
                classify_errors(errors_list),
                f"Validation failed for model "
                f"'{self._model_class.__name__}': {summary}",
                target_id=self._target_id,
                field=field,
                position=self._position,
                context={"error_count": len(errors_list)},
            ) from e

    @property
    def raw_data(self) -> dict:
        return self._data.copy()

    @property
    def model_name(self) -> str:
        return self._model_class.__name__
