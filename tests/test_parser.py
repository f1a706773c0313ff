from pathlib import Path

import pytest

from procedure_router import WorkflowParser, WorkflowSchemaError, WorkflowStructureError
from procedure_router.models import RequestClassification

VALID_YAML = """
version: "1.0"
workflows:
  - name: feature-work
    description: Feature development with verification
    priority: 10
    triggers:
      classifications: [code]
      labels: [feature]
      keywords: [implement]
    subroutines:
      - name: coding
        prompt_file: prompts/coding.md
        validation_loop: true
        max_iterations: 5
      - name: summary
        prompt_file: prompts/summary.md
        description: Wrap up
        single_turn: false
"""


def _workflow_yaml(name: str, prompt: str = "prompts/step.md", description: str = "A workflow") -> str:
    return f"""
workflows:
  - name: {name}
    description: {description}
    subroutines:
      - name: step
        prompt_file: {prompt}
"""


def _mapping(**subroutine: object) -> dict:
    step = {"name": "step", "prompt_file": "prompts/step.md", **subroutine}
    return {"workflows": [{"name": "flow", "description": "d", "subroutines": [step]}]}


def test_parse_reads_optional_fields() -> None:
    collection = WorkflowParser().parse(VALID_YAML)
    assert collection.version == "1.0"
    workflow = collection.workflows[0]
    assert workflow.priority == 10
    assert workflow.triggers is not None
    assert workflow.triggers.classifications == [RequestClassification.CODE]
    assert workflow.subroutines[0].max_iterations == 5


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ("", "YAML content is empty"),
        ("   \n", "YAML content is empty"),
        ("~", "empty or null"),
        ("- a\n- b\n", "must be an object"),
        ("other: 1\n", "must contain a 'workflows' property"),
        ("workflows: nope\n", "'workflows' must be an array"),
        ("workflows: []\n", "cannot be empty"),
        ("workflows: [unclosed\n", "Failed to parse YAML"),
    ],
)
def test_structural_errors_are_field_specific(text: str, message: str) -> None:
    with pytest.raises(WorkflowStructureError, match=message):
        WorkflowParser().parse(text)


def test_structural_errors_name_the_workflow_and_step() -> None:
    parser = WorkflowParser()
    with pytest.raises(WorkflowStructureError, match="Workflow 'flow' must have a 'description' string"):
        parser.parse("workflows:\n  - name: flow\n    subroutines: []\n")
    with pytest.raises(WorkflowStructureError, match="must have at least one subroutine"):
        parser.parse("workflows:\n  - name: flow\n    description: d\n    subroutines: []\n")
    with pytest.raises(WorkflowStructureError, match="Workflow at index 0 must have a 'name' string"):
        parser.parse("workflows:\n  - description: d\n")
    with pytest.raises(WorkflowStructureError, match="Subroutine 'step' in workflow 'flow' must have a 'prompt_file'"):
        parser.parse("workflows:\n  - name: flow\n    description: d\n    subroutines:\n      - name: step\n")


def test_validate_reports_schema_violations() -> None:
    parser = WorkflowParser()
    assert parser.validate(_mapping()).valid is True

    bad_prompt = parser.validate(_mapping(prompt_file="invalid.txt"))
    assert bad_prompt.valid is False
    assert bad_prompt.errors and "prompt_file" in bad_prompt.errors[0]

    assert parser.validate(_mapping(max_iterations=15)).valid is False
    assert parser.validate(_mapping(max_iterations=0)).valid is False

    bad_classification = _mapping()
    bad_classification["workflows"][0]["triggers"] = {"classifications": ["invalid-classification"]}
    assert parser.validate(bad_classification).valid is False

    bad_name = _mapping()
    bad_name["workflows"][0]["name"] = "Bad_Name"
    assert parser.validate(bad_name).valid is False


def test_parse_and_validate_raises_schema_error() -> None:
    with pytest.raises(WorkflowSchemaError, match="Workflow validation failed"):
        WorkflowParser().parse_and_validate(_workflow_yaml("Invalid_Name"))


def test_missing_schema_degrades_to_structural_checks(tmp_path: Path) -> None:
    parser = WorkflowParser(schema_path=tmp_path / "missing-schema.json")
    assert parser.validate(_mapping(prompt_file="invalid.txt")).valid is True
    collection = parser.parse_and_validate(_workflow_yaml("Loose_Name"))
    assert collection.workflows[0].name == "Loose_Name"


def test_to_procedure_resolves_prompts_and_keeps_absent_flags_absent() -> None:
    parser = WorkflowParser()
    collection = parser.parse_and_validate(VALID_YAML)
    procedure = parser.to_procedure(collection.workflows[0], Path("/repo/workflows"))

    coding, summary = procedure.steps
    assert coding.instruction_ref == str(Path("/repo/workflows") / "prompts/coding.md")
    assert coding.description == "coding"
    assert coding.uses_validation_loop is True
    assert coding.max_iterations == 5
    assert coding.single_turn is None
    assert coding.requires_approval is None
    assert summary.description == "Wrap up"
    assert summary.single_turn is False
    assert summary.specified_flags() == {"single_turn": False}


def test_to_procedure_maps_external_flag_names() -> None:
    text = """
workflows:
  - name: quiet
    description: d
    subroutines:
      - name: step
        prompt_file: step.md
        disallow_tools: true
        disallowed_tools: [Bash, Edit]
        requires_approval: true
        suppress_thought_posting: true
        skip_linear_post: false
"""
    parser = WorkflowParser()
    procedures = parser.to_procedures(parser.parse_and_validate(text), Path("base"))
    step = procedures["quiet"].steps[0]
    assert step.disallow_all_tools is True
    assert step.disallowed_tools == frozenset({"Bash", "Edit"})
    assert step.requires_approval is True
    assert step.suppress_output_posting is True
    assert step.skip_output_posting is False


def test_parse_directory_merges_in_lexicographic_order(tmp_path: Path) -> None:
    (tmp_path / "b-override.yaml").write_text(
        _workflow_yaml("shared", prompt="prompts/overridden.md", description="second"), encoding="utf-8"
    )
    (tmp_path / "a-base.yml").write_text(
        _workflow_yaml("shared", prompt="prompts/original.md", description="first"), encoding="utf-8"
    )
    (tmp_path / "readme.md").write_text("# Readme", encoding="utf-8")

    result = WorkflowParser().parse_directory(tmp_path)
    assert result.parsed_files == ["a-base.yml", "b-override.yaml"]
    assert result.errors == {}
    assert len(result.collection.workflows) == 1
    shared = result.collection.workflows[0]
    assert shared.description == "second"
    assert shared.subroutines[0].prompt_file == "prompts/overridden.md"


def test_parse_directory_isolates_per_file_errors(tmp_path: Path) -> None:
    (tmp_path / "good.yaml").write_text(_workflow_yaml("good-flow"), encoding="utf-8")
    (tmp_path / "invalid.yaml").write_text("workflows:\n  - name: broken\n", encoding="utf-8")

    result = WorkflowParser().parse_directory(tmp_path)
    assert [workflow.name for workflow in result.collection.workflows] == ["good-flow"]
    assert result.parsed_files == ["good.yaml"]
    assert list(result.errors) == ["invalid.yaml"]


def test_parse_directory_reports_directory_problems(tmp_path: Path) -> None:
    parser = WorkflowParser()
    assert "does not exist" in parser.parse_directory(tmp_path / "nope").errors["_directory"]

    file_path = tmp_path / "file.yaml"
    file_path.write_text(_workflow_yaml("x"), encoding="utf-8")
    assert "not a directory" in parser.parse_directory(file_path).errors["_directory"]

    empty = tmp_path / "empty"
    empty.mkdir()
    assert parser.parse_directory(empty).errors == {"_directory": "No YAML files found in directory"}
