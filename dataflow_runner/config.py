"""
Config resolution: template, parse and validate cluster and playbook records.

Records are self-describing JSON documents:

    {"schema": "iglu:com.snowplowanalytics.dataflowrunner/ClusterConfig/avro/1-0-0",
     "data": {...}}

The raw file is rendered with Jinja2 first, so values such as
``{{ system_env("AWS_ACCESS_KEY_ID") }}`` or ``{{ bucket }}`` (from --vars) are
substituted before the JSON is parsed and the ``data`` member is validated.
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Type, TypeVar

from jinja2 import Environment, StrictUndefined, TemplateError
from pydantic import BaseModel, ValidationError

from .errors import ConfigError
from .models import ClusterConfig, PlaybookConfig

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


def now_with_format(fmt: str) -> str:
    """Current local time rendered with a strftime format."""
    return datetime.now().strftime(fmt)


def system_env(name: str) -> str:
    return os.environ.get(name, "")


class ConfigResolver:
    """Turns config files plus a variable map into validated records."""

    def __init__(self):
        self.env = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        self.env.globals.update(
            now_with_format=now_with_format,
            system_env=system_env,
        )

    def resolve_cluster(self, path: str | Path, variables: dict | None = None) -> ClusterConfig:
        return self._resolve_file(path, variables, ClusterConfig)

    def resolve_playbook(self, path: str | Path, variables: dict | None = None) -> PlaybookConfig:
        return self._resolve_file(path, variables, PlaybookConfig)

    def parse_cluster(self, raw: str, variables: dict | None = None) -> ClusterConfig:
        return self._parse(raw, variables, ClusterConfig)

    def parse_playbook(self, raw: str, variables: dict | None = None) -> PlaybookConfig:
        return self._parse(raw, variables, PlaybookConfig)

    # ─────────────────────────────────────────────────────────────────────────

    def _resolve_file(self, path: str | Path, variables: dict | None, model: Type[RecordT]) -> RecordT:
        path = Path(path)
        try:
            raw = path.read_text()
        except OSError as e:
            raise ConfigError(f"Couldn't read config file {path}: {e.strerror}") from e

        logger.debug("Resolving %s from %s", model.__name__, path)
        try:
            return self._parse(raw, variables, model)
        except ConfigError as e:
            raise ConfigError(f"{path}: {e}") from e

    def _parse(self, raw: str, variables: dict | None, model: Type[RecordT]) -> RecordT:
        rendered = self.render(raw, variables)

        try:
            document = json.loads(rendered)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON: {e}") from e

        if not isinstance(document, dict):
            raise ConfigError("Config must be a JSON object with 'schema' and 'data' members")

        schema = document.get("schema", "")
        if not isinstance(schema, str):
            raise ConfigError("'schema' must be a string")
        if schema:
            logger.debug("Record self-describes as %s", schema)

        try:
            return model.model_validate(document.get("data", {}))
        except ValidationError as e:
            raise ConfigError(f"Invalid {model.__name__}: {_format_validation_error(e)}") from e

    def render(self, raw: str, variables: dict | None = None) -> str:
        """Run the raw config through the templater."""
        try:
            return self.env.from_string(raw).render(**(variables or {}))
        except TemplateError as e:
            raise ConfigError(f"Couldn't render config template: {e}") from e


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "data"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def vars_to_map(raw: str | None) -> dict[str, Any]:
    """Turn ``k1,v1,k2,v2`` into ``{"k1": "v1", "k2": "v2"}``."""
    if not raw:
        return {}

    items = raw.split(",")
    if len(items) % 2 != 0:
        raise ConfigError("--vars must have an even number of keys and values")

    return dict(zip(items[0::2], items[1::2]))
