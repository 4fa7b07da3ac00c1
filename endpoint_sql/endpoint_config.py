from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Sequence

from endpoint_sql.batch_writer import DEFAULT_MAX_BATCH_SIZE, DEFAULT_RECORDS_FIELD, BatchUpsertWriter
from endpoint_sql.errors import ConfigurationError
from endpoint_sql.models import FieldMapping, ParameterCondition
from endpoint_sql.reader import ConditionalReader
from endpoint_sql.validators import BatchPayloadValidator, RequiredFieldsValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Endpoint:
    """
    A configured reader or batch writer plus its optional payload validator.
    """
    name: str
    kind: str
    handler: ConditionalReader | BatchUpsertWriter
    validator: Callable[[Any], dict | None] | None = None

    def execute(self, client, payload) -> dict:
        if self.validator is not None:
            rejected = self.validator(payload)
            if rejected is not None:
                return rejected
        return self.handler.execute(client, payload)


def _conditions(entries: list[dict]) -> list[ParameterCondition]:
    return [
        ParameterCondition(
            name=e["name"],
            sql_when_present=e.get("when_present"),
            sql_when_absent=e.get("when_absent"),
            bind_parameter=bool(e.get("bind", True)),
            default_value=e.get("default"),
        )
        for e in entries
    ]


def _field_mappings(entries: list[dict]) -> list[FieldMapping]:
    return [
        FieldMapping(
            request_field=e["request_field"],
            storage_column=e.get("storage_column", e["request_field"]),
            required=bool(e.get("required", False)),
            is_key=bool(e.get("is_key", False)),
            default_value=e.get("default"),
        )
        for e in entries
    ]


def _build_read(cfg: dict) -> ConditionalReader:
    return ConditionalReader(
        cfg["template"],
        _conditions(cfg.get("conditions", [])),
        exclude_fields=cfg.get("exclude_fields"),
        default_where=cfg.get("default_where"),
        field_mappings=_field_mappings(cfg.get("field_mappings", [])),
    )


def _build_table_read(cfg: dict) -> ConditionalReader:
    return ConditionalReader.for_table(
        cfg["table"],
        cfg.get("fields", []),
        exclude_fields=cfg.get("exclude_fields"),
        use_like=bool(cfg.get("use_like", True)),
    )


def _build_batch_write(cfg: dict) -> BatchUpsertWriter:
    return BatchUpsertWriter(
        cfg["table"],
        _field_mappings(cfg.get("field_mappings", [])),
        allow_updates=bool(cfg.get("allow_updates", False)),
        max_batch_size=cfg.get("max_batch_size", DEFAULT_MAX_BATCH_SIZE),
        records_field=cfg.get("records_field", DEFAULT_RECORDS_FIELD),
    )


_BUILDERS: dict[str, Callable[[dict], Any]] = {
    "read": _build_read,
    "table_read": _build_table_read,
    "batch_write": _build_batch_write,
}


class EndpointRegistry:
    """
    Endpoints built from JSON definitions.

    Supported config source shapes:
    - dict with a single endpoint definition (contains "name")
    - dict with "endpoints": [...]
    - list of endpoint definitions
    """

    def __init__(self):
        self._endpoints: dict[str, Endpoint] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._endpoints

    def __len__(self) -> int:
        return len(self._endpoints)

    def names(self) -> list[str]:
        return sorted(self._endpoints)

    def get(self, name: str) -> Endpoint:
        try:
            return self._endpoints[name]
        except KeyError:
            raise LookupError(f"Unknown endpoint: {name}") from None

    def register(self, endpoint: Endpoint) -> None:
        if endpoint.name in self._endpoints:
            raise ConfigurationError(f"Endpoint '{endpoint.name}' is defined more than once.")
        self._endpoints[endpoint.name] = endpoint

    @classmethod
    def load(
        cls,
        *,
        config_dir: str | Path | None = None,
        config_files: Sequence[str | Path] | None = None,
        config_payloads: Sequence[dict | list] | None = None,
    ) -> "EndpointRegistry":
        """
        Build every endpoint found in the given sources.

        Args:
            config_dir:
                Directory containing *.json endpoint definition files.
            config_files:
                Explicit list of JSON definition files.
            config_payloads:
                In-memory definition payload(s) already parsed from JSON.
        """
        registry = cls()
        sources = registry._load_sources(
            config_dir=config_dir,
            config_files=config_files,
            config_payloads=config_payloads,
        )
        for source_name, cfg in sources:
            for entry in registry._normalise_endpoints_config(cfg, source_name):
                registry.register(registry._build_endpoint(entry, source_name))
        logger.debug("Loaded %s endpoint(s) from %s source(s)", len(registry), len(sources))
        return registry

    def _build_endpoint(self, entry: dict, source_name: str) -> Endpoint:
        if not isinstance(entry, dict):
            raise ConfigurationError(f"Config source '{source_name}' has a non-object endpoint entry.")
        name = entry.get("name")
        if not name:
            raise ConfigurationError(f"Config source '{source_name}' has entry missing 'name'.")
        kind = entry.get("kind")
        builder = _BUILDERS.get(kind)
        if builder is None:
            raise ConfigurationError(
                f"Config source '{source_name}' endpoint '{name}' has unknown kind {kind!r}; "
                f"expected one of {', '.join(sorted(_BUILDERS))}."
            )

        try:
            handler = builder(entry)
        except (KeyError, TypeError, ValueError) as exc:
            detail = f"missing field {exc}" if isinstance(exc, KeyError) else str(exc)
            raise ConfigurationError(f"Config source '{source_name}' endpoint '{name}': {detail}") from exc

        validator = None
        if entry.get("required"):
            validator = RequiredFieldsValidator(entry["required"])
        elif kind == "batch_write" and entry.get("require_array"):
            validator = BatchPayloadValidator([entry.get("records_field", DEFAULT_RECORDS_FIELD)])
        return Endpoint(name=name, kind=kind, handler=handler, validator=validator)

    def _load_sources(
        self,
        *,
        config_dir: str | Path | None,
        config_files: Sequence[str | Path] | None,
        config_payloads: Sequence[dict | list] | None,
    ) -> list[tuple[str, dict | list]]:
        sources: list[tuple[str, dict | list]] = []

        if config_dir is not None:
            directory = Path(config_dir)
            if not directory.exists() or not directory.is_dir():
                raise ConfigurationError(f"config_dir does not exist or is not a directory: {directory}")
            for json_path in sorted(directory.glob("*.json")):
                sources.append((str(json_path), self._load_json_file(json_path)))

        if config_files:
            for raw_path in config_files:
                json_path = Path(raw_path)
                if not json_path.exists() or not json_path.is_file():
                    raise ConfigurationError(f"Config file not found: {json_path}")
                sources.append((str(json_path), self._load_json_file(json_path)))

        if config_payloads:
            for i, payload in enumerate(config_payloads):
                sources.append((f"<payload:{i}>", payload))

        if not sources:
            raise ConfigurationError(
                "At least one config source is required. Provide config_dir, config_files, or config_payloads."
            )

        return sources

    def _load_json_file(self, json_path: Path) -> dict | list:
        try:
            return json.loads(json_path.read_text(encoding="utf-8"))
        except Exception as exc:
            raise ConfigurationError(f"Failed to parse JSON config: {json_path}") from exc

    def _normalise_endpoints_config(self, cfg: dict | list, source_name: str) -> list:
        if isinstance(cfg, list):
            return cfg

        if isinstance(cfg, dict) and isinstance(cfg.get("endpoints"), list):
            return cfg["endpoints"]

        if isinstance(cfg, dict) and "name" in cfg:
            return [cfg]

        raise ConfigurationError(f"Unsupported endpoint config structure in '{source_name}'.")


def load_endpoints(**kwargs) -> EndpointRegistry:
    """
    Convenience wrapper:

        endpoints = load_endpoints(config_dir="endpoints")
        endpoints.get("articles-read").execute(client, payload)
    """
    return EndpointRegistry.load(**kwargs)
