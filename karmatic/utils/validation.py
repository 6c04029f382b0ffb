"""Validation of incoming search payloads.

Raises :class:`karmatic.exceptions.ValidationError`, which the app-wide error
handler renders as a 400 ``validation_error`` response.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Mapping

from karmatic.exceptions import ValidationError

# Field length limits for DoS prevention
_FIELD_MAX_LENGTHS = {
    'location': 200,
    'query': 200,
    'placeId': 300,
}

_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]')

_MAX_RESULTS_ITEMS = 500


def _check_field_length(field: str, value: Any, max_length: int) -> None:
    """Check if a field exceeds maximum allowed length.

    Raises
    ------
    ValidationError
        If the field exceeds the maximum length.
    """
    if value is None:
        return

    str_value = str(value)
    if len(str_value) > max_length:
        raise ValidationError(
            f"Field exceeds maximum length of {max_length} characters (got {len(str_value)})",
            field=field,
        )


def normalize_text(value: str) -> str:
    """NFC-normalize, drop control characters and collapse whitespace."""
    value = unicodedata.normalize("NFC", value)
    value = _CONTROL_CHARS.sub("", value)
    return re.sub(r"\s+", " ", value).strip()


def _optional_text(data: Mapping[str, Any], field: str) -> str | None:
    value = data.get(field)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("Field must be a string", field=field)
    _check_field_length(field, value, _FIELD_MAX_LENGTHS[field])
    value = normalize_text(value)
    return value or None


def _validate_coordinates(value: Any) -> Dict[str, float] | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ValidationError("Coordinates must be an object with lat/lng", field="coordinates")
    try:
        lat = float(value.get("lat"))
        lng = float(value.get("lng"))
    except (TypeError, ValueError):
        raise ValidationError("Coordinates must be numeric", field="coordinates")
    if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lng <= 180.0):
        raise ValidationError("Coordinates out of range", field="coordinates")
    return {"lat": lat, "lng": lng}


def validate_search_request(data: Any) -> Dict[str, Any]:
    """Validate the ``{location, query?}`` body of a tracked search.

    Returns
    -------
    dict
        ``location`` (non-empty, normalized) and ``query`` (normalized or None).
    """
    if not isinstance(data, Mapping):
        raise ValidationError("Invalid JSON payload", field="payload")

    location = _optional_text(data, "location")
    if not location:
        raise ValidationError("Location is required", field="location")

    return {"location": location, "query": _optional_text(data, "query")}


def validate_save_request(data: Any) -> Dict[str, Any]:
    """Validate a save-search body: the tracked fields plus optional results."""
    validated = validate_search_request(data)

    results = data.get("results")
    if results is not None and not isinstance(results, list):
        raise ValidationError("Results must be a list", field="results")
    if results is not None and len(results) > _MAX_RESULTS_ITEMS:
        raise ValidationError(f"At most {_MAX_RESULTS_ITEMS} results can be saved", field="results")

    validated["place_id"] = _optional_text(data, "placeId")
    validated["coordinates"] = _validate_coordinates(data.get("coordinates"))
    validated["results"] = results or []
    return validated
