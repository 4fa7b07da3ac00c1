from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from endpoint_sql.errors import ConfigurationError, describe_error, error_response
from endpoint_sql.field_lookup import CaseInsensitiveFieldLookup
from endpoint_sql.identifiers import identifier_text, is_simple_name, validate_identifier
from endpoint_sql.models import FieldMapping, ParameterCondition
from endpoint_sql.psql_client import fetch_rows, to_pyformat
from endpoint_sql.query_builder import WHERE_MARKER, ConditionalQueryBuilder

logger = logging.getLogger(__name__)


class ConditionalReader:
    """
    Read endpoint: build the conditional query for a request and return the rows.

        reader = ConditionalReader(
            "SELECT * FROM Articles {WHERE} ORDER BY ArticleId",
            [ParameterCondition("Author", "Author = :Author")],
            exclude_fields=["InternalNotes"],
        )
        response = reader.execute(client, {"author": "ada"})
    """

    def __init__(
        self,
        template: str,
        conditions: Sequence[ParameterCondition] | Mapping[str, ParameterCondition] | None = None,
        exclude_fields: Sequence[str] | None = None,
        default_where: str | None = None,
        field_mappings: Sequence[FieldMapping] | Mapping[str, FieldMapping] | None = None,
        *,
        lookup: CaseInsensitiveFieldLookup | None = None,
    ):
        self.builder = ConditionalQueryBuilder(
            template,
            conditions,
            default_where=default_where,
            field_mappings=field_mappings,
            lookup=lookup,
        )
        self.exclude_fields = tuple(exclude_fields or ())

    @classmethod
    def for_table(
        cls,
        table: str,
        fields: Sequence[str],
        exclude_fields: Sequence[str] | None = None,
        use_like: bool = True,
        *,
        lookup: CaseInsensitiveFieldLookup | None = None,
    ) -> "ConditionalReader":
        """
        Reader over a whole table, filtering on each listed column when the request provides it.
        """
        validate_identifier(table, "table name")
        operator = "LIKE" if use_like else "="
        conditions = []
        for name in fields:
            if not is_simple_name(name):
                raise ConfigurationError(f"Invalid filter column: {name!r}")
            conditions.append(ParameterCondition(name, f"{name} {operator} :{name}"))
        template = f"SELECT * FROM {identifier_text(table)} {WHERE_MARKER}"
        return cls(template, conditions, exclude_fields=exclude_fields, lookup=lookup)

    def execute(self, client, payload) -> dict[str, Any]:
        try:
            built = self.builder.build(payload)
            logger.debug("Executing read: %s", built.sql)
            records = fetch_rows(client, to_pyformat(built.sql), built.params, exclude=self.exclude_fields)
        except Exception as exc:
            logger.warning("Read failed: %s", describe_error(exc))
            logger.debug("Read failure detail", exc_info=True)
            return error_response(f"Error reading records: {describe_error(exc)}")

        return {
            "Result": "OK",
            "ProvidedParameters": ",".join(built.provided),
            "Records": records,
        }
