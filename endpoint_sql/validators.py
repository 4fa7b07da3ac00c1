from __future__ import annotations

from typing import Sequence

from endpoint_sql.errors import error_response
from endpoint_sql.field_lookup import CaseInsensitiveFieldLookup
from endpoint_sql.parameters import get_object_parameter


class RequiredFieldsValidator:
    """
    Payload check run before an endpoint: every listed field must be present.

    validate() returns None when the payload is acceptable, else a KO response.
    """

    def __init__(self, required: Sequence[str], *, lookup: CaseInsensitiveFieldLookup | None = None):
        self.required = list(required)
        self._lookup = lookup

    def validate(self, payload) -> dict | None:
        for name in self.required:
            found, _ = get_object_parameter(payload, name, lookup=self._lookup)
            if not found:
                return error_response(
                    f"Parameter {name} not specified. Required parameters: {','.join(self.required)}"
                )
        return None

    __call__ = validate


class BatchPayloadValidator:
    def __init__(self, array_fields: Sequence[str] = ("Records",), *, lookup: CaseInsensitiveFieldLookup | None = None):
        self.array_fields = list(array_fields)
        self._lookup = lookup

    def validate(self, payload) -> dict | None:
        for name in self.array_fields:
            found, value = get_object_parameter(payload, name, lookup=self._lookup)
            if not found:
                return error_response(f"Parameter {name} not specified")
            if not isinstance(value, list):
                return error_response(f"Parameter {name} must be an array")
        return None

    __call__ = validate
