from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError
from pydantic import ValidationError

from .models import (
    DirectoryParseResult,
    Procedure,
    SchemaValidationResult,
    StepDefinition,
    SubroutineReference,
    WorkflowCollection,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "workflow-schema.json"
YAML_SUFFIXES = (".yaml", ".yml")
DIRECTORY_ERROR_KEY = "_directory"

# External snake_case field -> StepDefinition field.
_FLAG_MAPPING: tuple[tuple[str, str], ...] = (
    ("single_turn", "single_turn"),
    ("validation_loop", "uses_validation_loop"),
    ("max_iterations", "max_iterations"),
    ("disallow_tools", "disallow_all_tools"),
    ("disallowed_tools", "disallowed_tools"),
    ("requires_approval", "requires_approval"),
    ("suppress_thought_posting", "suppress_output_posting"),
    ("skip_linear_post", "skip_output_posting"),
)


class WorkflowStructureError(ValueError):
    """Raised when definition text is unreadable or structurally malformed."""


class WorkflowSchemaError(ValueError):
    """Raised when a structurally sound definition violates the workflow schema."""


class WorkflowParser:
    """Parse, validate and convert YAML workflow definitions.

    Parsing happens in two passes. The structural pass produces readable,
    field-specific errors for the common authoring mistakes; the schema pass
    enforces naming patterns, enums and numeric ranges. A missing or broken
    schema file disables the second pass instead of failing every load.
    """

    def __init__(self, schema_path: Path | None = None) -> None:
        self.schema_path = schema_path or DEFAULT_SCHEMA_PATH
        self._validator: Draft202012Validator | None = None
        self._schema_loaded = False

    def _load_schema(self) -> Draft202012Validator | None:
        if self._schema_loaded:
            return self._validator
        self._schema_loaded = True
        try:
            schema = json.loads(self.schema_path.read_text(encoding="utf-8"))
            Draft202012Validator.check_schema(schema)
            self._validator = Draft202012Validator(schema)
        except (OSError, json.JSONDecodeError, SchemaError) as exc:
            logger.debug("Workflow schema unavailable at %s, skipping schema validation: %s", self.schema_path, exc)
            self._validator = None
        return self._validator

    def load_mapping(self, text: str) -> dict[str, Any]:
        """Run the structural pass and return the raw mapping.

        Raises:
            WorkflowStructureError: With a message naming the offending field.
        """
        if not text or not text.strip():
            raise WorkflowStructureError("YAML content is empty")
        try:
            parsed = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise WorkflowStructureError(f"Failed to parse YAML: {exc}") from exc

        if parsed is None:
            raise WorkflowStructureError("YAML content is empty or null")
        if not isinstance(parsed, dict):
            raise WorkflowStructureError("YAML must be an object with a 'workflows' array")
        if "workflows" not in parsed:
            raise WorkflowStructureError("YAML must contain a 'workflows' property")
        workflows = parsed["workflows"]
        if not isinstance(workflows, list):
            raise WorkflowStructureError("'workflows' must be an array")
        if not workflows:
            raise WorkflowStructureError("'workflows' array cannot be empty")

        for index, workflow in enumerate(workflows):
            if not isinstance(workflow, dict):
                raise WorkflowStructureError(f"Workflow at index {index} must be an object")
            name = workflow.get("name")
            if not isinstance(name, str):
                raise WorkflowStructureError(f"Workflow at index {index} must have a 'name' string")
            if not isinstance(workflow.get("description"), str):
                raise WorkflowStructureError(f"Workflow '{name}' must have a 'description' string")
            subroutines = workflow.get("subroutines")
            if not isinstance(subroutines, list):
                raise WorkflowStructureError(f"Workflow '{name}' must have a 'subroutines' array")
            if not subroutines:
                raise WorkflowStructureError(f"Workflow '{name}' must have at least one subroutine")
            for sub_index, sub in enumerate(subroutines):
                if not isinstance(sub, dict):
                    raise WorkflowStructureError(
                        f"Subroutine at index {sub_index} in workflow '{name}' must be an object"
                    )
                sub_name = sub.get("name")
                if not isinstance(sub_name, str):
                    raise WorkflowStructureError(
                        f"Subroutine at index {sub_index} in workflow '{name}' must have a 'name' string"
                    )
                if not isinstance(sub.get("prompt_file"), str):
                    raise WorkflowStructureError(
                        f"Subroutine '{sub_name}' in workflow '{name}' must have a 'prompt_file' string"
                    )
        return parsed

    def parse(self, text: str) -> WorkflowCollection:
        """Parse YAML text into a collection after the structural pass only."""
        return _to_collection(self.load_mapping(text))

    def validate(self, collection: WorkflowCollection | Mapping[str, Any]) -> SchemaValidationResult:
        """Validate a collection or raw mapping against the workflow schema."""
        validator = self._load_schema()
        if validator is None:
            return SchemaValidationResult(valid=True)

        payload = (
            collection.model_dump(mode="json", exclude_none=True)
            if isinstance(collection, WorkflowCollection)
            else dict(collection)
        )
        errors = sorted(validator.iter_errors(payload), key=lambda err: [str(part) for part in err.absolute_path])
        if not errors:
            return SchemaValidationResult(valid=True)
        return SchemaValidationResult(valid=False, errors=[_format_schema_error(err) for err in errors])

    def parse_and_validate(self, text: str) -> WorkflowCollection:
        """Parse and schema-validate YAML text.

        Raises:
            WorkflowStructureError: If the structural pass fails.
            WorkflowSchemaError: If the schema pass fails.
        """
        raw = self.load_mapping(text)
        result = self.validate(raw)
        if not result.valid:
            raise WorkflowSchemaError("Workflow validation failed:\n" + "\n".join(result.errors or []))
        return _to_collection(raw)

    def parse_file(self, path: Path) -> WorkflowCollection:
        return self.parse_and_validate(path.read_text(encoding="utf-8"))

    def parse_directory(
        self,
        directory: Path,
        parse_file: Callable[[Path], WorkflowCollection] | None = None,
    ) -> DirectoryParseResult:
        """Parse every YAML file in ``directory`` and merge by workflow name.

        Files are visited in lexicographic order and a later file's workflow
        replaces an earlier one with the same name. Failures are recorded per
        file and never abort the remaining files.

        Args:
            directory: Directory holding ``*.yaml`` / ``*.yml`` files.
            parse_file: Optional per-file parser, used by callers that cache
                parsed collections. Defaults to :meth:`parse_file`.
        """
        parse_one = parse_file or self.parse_file
        result = DirectoryParseResult()
        if not directory.exists():
            result.errors[DIRECTORY_ERROR_KEY] = f"Directory does not exist: {directory}"
            return result
        if not directory.is_dir():
            result.errors[DIRECTORY_ERROR_KEY] = f"Path is not a directory: {directory}"
            return result

        files = sorted(entry for entry in directory.iterdir() if entry.is_file() and entry.suffix in YAML_SUFFIXES)
        if not files:
            result.errors[DIRECTORY_ERROR_KEY] = "No YAML files found in directory"
            return result

        merged: dict[str, WorkflowDefinition] = {}
        for file_path in files:
            try:
                collection = parse_one(file_path)
            except (OSError, UnicodeDecodeError, WorkflowStructureError, WorkflowSchemaError) as exc:
                result.errors[file_path.name] = str(exc)
                continue
            for workflow in collection.workflows:
                merged[workflow.name] = workflow
            result.parsed_files.append(file_path.name)

        result.collection = WorkflowCollection(workflows=list(merged.values()))
        return result

    def to_procedure(self, definition: WorkflowDefinition, base_path: Path) -> Procedure:
        """Convert an external definition into a ``Procedure``.

        Prompt files resolve relative to ``base_path``. Only the flags present
        in the source definition are carried over.
        """
        steps = tuple(_to_step(ref, base_path) for ref in definition.subroutines)
        return Procedure(name=definition.name, description=definition.description, steps=steps)

    def to_procedures(self, collection: WorkflowCollection, base_path: Path) -> dict[str, Procedure]:
        procedures: dict[str, Procedure] = {}
        for definition in collection.workflows:
            procedure = self.to_procedure(definition, base_path)
            procedures[procedure.name] = procedure
        return procedures


def _to_collection(raw: Mapping[str, Any]) -> WorkflowCollection:
    try:
        return WorkflowCollection.model_validate(raw)
    except ValidationError as exc:
        messages = [
            f"/{'/'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        ]
        raise WorkflowSchemaError("Workflow validation failed:\n" + "\n".join(messages)) from exc


def _to_step(ref: SubroutineReference, base_path: Path) -> StepDefinition:
    fields: dict[str, Any] = {
        "name": ref.name,
        "instruction_ref": str(base_path / ref.prompt_file),
        "description": ref.description or ref.name,
    }
    for source_name, target_name in _FLAG_MAPPING:
        value = getattr(ref, source_name)
        if value is not None:
            fields[target_name] = value
    return StepDefinition(**fields)


def _format_schema_error(error: Any) -> str:
    path = "/" + "/".join(str(part) for part in error.absolute_path)
    return f"{path}: {error.message}"
