"""JSON schema checks for raw classifier output."""

from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, List, Optional

import jsonschema

from .schemas import OrchestratorError

SCHEMAS_DIR = Path(__file__).resolve().parents[1] / "schemas"

Fixer = Callable[[Any], Any]


class SchemaValidationError(OrchestratorError):
    def __init__(self, schema_name: str, problems: List[str]) -> None:
        self.schema_name = schema_name
        self.problems = problems
        super().__init__("; ".join(problems) or f"payload does not match {schema_name}")


@lru_cache(maxsize=None)
def schema_validator(schema_name: str) -> jsonschema.protocols.Validator:
    """Compiled validator for a file under schemas/; checked once per process."""
    path = SCHEMAS_DIR / schema_name
    if not path.exists():
        raise FileNotFoundError(f"Schema not found: {path}")
    schema = json.loads(path.read_text(encoding="utf-8"))
    cls = jsonschema.validators.validator_for(schema)
    cls.check_schema(schema)
    return cls(schema)


def schema_problems(payload: Any, schema_name: str) -> List[str]:
    """Every violation as ``location: message``, ordered by location."""
    errors = sorted(schema_validator(schema_name).iter_errors(payload), key=lambda err: list(map(str, err.absolute_path)))
    return [f"{'/'.join(str(part) for part in err.absolute_path) or '<root>'}: {err.message}" for err in errors]


def validate_payload(payload: Any, schema_name: str) -> None:
    problems = schema_problems(payload, schema_name)
    if problems:
        raise SchemaValidationError(schema_name, problems)


def validate_or_repair(payload: Any, schema_name: str, fixer: Optional[Fixer] = None) -> Any:
    """
    Return ``payload`` if it matches the schema, else ``fixer(payload)`` if that does.

    The fixer gets one chance; its output goes through the same validation.
    """
    problems = schema_problems(payload, schema_name)
    if not problems:
        return payload
    if fixer is None:
        raise SchemaValidationError(schema_name, problems)
    repaired = fixer(payload)
    validate_payload(repaired, schema_name)
    return repaired
