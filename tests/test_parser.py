import json
from pathlib import Path

import pytest

from process_engine.core import WorkflowParser
from process_engine.exceptions import ValidationError
from process_engine.models import StepKind


def sample_definition():
    return {
        "name": "Order intake",
        "variables": {"region": "eu"},
        "settings": {"maxIterations": 50},
        "steps": [
            {"id": "start", "kind": "trigger", "name": "Start", "nextSteps": "check"},
            {"id": "check", "kind": "condition", "name": "Big order?",
             "config": {"condition": "amount > 100"},
             "nextSteps": {"true": "notify", "false": "done"}},
            {"id": "notify", "type": "notification", "name": "Notify",
             "config": {"recipients": ["ops"], "message": "Big order"}, "nextSteps": "done"},
            {"id": "done", "kind": "action", "name": "Done",
             "config": {"action": "log", "parameters": {"message": "ok"}}},
        ],
    }


@pytest.fixture
def parser():
    return WorkflowParser()


class TestLoad:

    def test_parse_dict(self, parser):
        workflow = parser.parse(sample_definition())
        assert workflow.name == "Order intake"
        assert [s.id for s in workflow.steps] == ["start", "check", "notify", "done"]
        assert workflow.get_step("notify").kind == StepKind.NOTIFICATION
        assert workflow.settings.max_iterations == 50
        assert workflow.variables == {"region": "eu"}

    def test_workflow_key_is_unwrapped(self, parser):
        workflow = parser.parse({"workflow": sample_definition()})
        assert workflow.name == "Order intake"

    def test_parse_yaml_string(self, parser):
        source = """
name: From YAML
steps:
  - id: start
    kind: trigger
    name: Start
"""
        workflow = parser.parse(source)
        assert workflow.name == "From YAML"
        assert workflow.steps[0].kind == StepKind.TRIGGER

    def test_parse_json_and_yaml_files(self, parser, tmp_path):
        json_file = tmp_path / "flow.json"
        json_file.write_text(json.dumps(sample_definition()), encoding="utf-8")
        yaml_file = tmp_path / "flow.yml"
        yaml_file.write_text("name: Tiny\nsteps:\n  - {id: start, kind: trigger, name: Start}\n",
                             encoding="utf-8")

        assert parser.parse(parser.read_file(json_file)).name == "Order intake"
        assert parser.parse(parser.read_file(str(yaml_file))).name == "Tiny"

    def test_path_strings_are_not_opened(self, parser, tmp_path):
        definition_file = tmp_path / "flow.json"
        definition_file.write_text(json.dumps(sample_definition()), encoding="utf-8")

        with pytest.raises(ValidationError, match="not a file path"):
            parser.load(str(definition_file))
        with pytest.raises(ValidationError, match="Unsupported definition source"):
            parser.parse(definition_file)

    def test_missing_file_and_unknown_format(self, parser, tmp_path):
        with pytest.raises(ValidationError, match="not found"):
            parser.read_file(tmp_path / "absent.yaml")
        with pytest.raises(ValidationError, match="Unsupported file format"):
            parser.load_file(tmp_path / "flow.toml")

    def test_malformed_text_is_a_validation_error(self, parser):
        with pytest.raises(ValidationError, match="YAML"):
            parser.load("name: [unclosed")
        with pytest.raises(ValidationError, match="mapping"):
            parser.load("- just\n- a list\n")


class TestValidate:

    def test_valid_definition_has_no_errors(self, parser):
        report = parser.validate(sample_definition())
        assert report == {"errors": [], "warnings": []}

    def test_schema_errors_carry_a_path(self, parser):
        report = parser.validate({"name": "", "steps": []})
        assert any(e.startswith("name:") for e in report["errors"])
        assert any(e.startswith("steps:") for e in report["errors"])

    def test_unknown_kind_and_duplicate_ids(self, parser):
        definition = sample_definition()
        definition["steps"].append({"id": "done", "kind": "action", "config": {"action": "log"}})
        definition["steps"].append({"id": "odd", "kind": "teleport"})
        errors = parser.validate(definition)["errors"]
        assert "Duplicate step id: done" in errors
        assert "Unknown step kind 'teleport' on step odd" in errors

    def test_dangling_reference_and_unreachable_step(self, parser):
        definition = sample_definition()
        definition["steps"][3]["nextSteps"] = "nowhere"
        definition["steps"].append({"id": "island", "kind": "action", "name": "Island",
                                    "config": {"action": "log"}})
        errors = parser.validate(definition)["errors"]
        assert "Step done references unknown step nowhere" in errors
        assert "Step island is not reachable from start" in errors

    def test_required_config_is_checked(self, parser):
        definition = sample_definition()
        definition["steps"][1]["config"] = {}
        definition["steps"][3]["config"] = {}
        errors = parser.validate(definition)["errors"]
        assert "Step check (condition) requires config.condition or config.expression" in errors
        assert "Step done (action) requires config.action" in errors

    def test_warnings_do_not_block(self, parser):
        definition = sample_definition()
        del definition["steps"][3]["name"]
        definition["steps"][1]["nextSteps"] = {"true": "notify"}
        definition["steps"].append({"id": "again", "kind": "trigger", "name": "Again",
                                    "nextSteps": "done"})
        report = parser.validate(definition)
        assert report["errors"] == ["Step again is not reachable from start"]
        assert "Step done has no name" in report["warnings"]
        assert "Condition step check has no 'false' branch" in report["warnings"]
        assert any(w.startswith("Multiple trigger steps") for w in report["warnings"])

    def test_large_workflows_are_flagged(self, parser):
        steps = [{"id": f"s{i}", "kind": "action", "name": f"S{i}", "config": {"action": "log"},
                  "nextSteps": f"s{i + 1}"} for i in range(120)]
        steps[-1]["nextSteps"] = None
        report = parser.validate({"name": "Big", "steps": steps})
        assert report["errors"] == []
        assert report["warnings"] == ["Workflow has 120 steps (may impact performance)"]

    def test_parse_raises_with_every_error(self, parser):
        definition = sample_definition()
        definition["steps"][3]["nextSteps"] = "nowhere"
        definition["steps"][1]["config"] = {}
        with pytest.raises(ValidationError) as info:
            parser.parse(definition)
        assert len(info.value.errors) == 2


EXAMPLES_DIR = Path(__file__).resolve().parent.parent / "examples"


class TestShippedExamples:

    @pytest.mark.parametrize("path", sorted(EXAMPLES_DIR.glob("*.yaml")), ids=lambda p: p.name)
    def test_example_is_clean(self, parser, path):
        assert parser.validate(parser.read_file(path)) == {"errors": [], "warnings": []}

    @pytest.mark.asyncio
    async def test_expense_example_dry_run(self, parser, engine, crud):
        result = await engine.test_execution(
            parser.read_file(EXAMPLES_DIR / "expense_approval.yaml"), {"amount": 120, "employee": "dana"},
        )

        assert result["execution"]["status"] == "completed"
        assert result["execution"]["context"]["variables"]["autoApproved"] is True
        assert [change["kind"] for change in result["wouldChange"]] == ["crud.create", "notification"]
        assert crud.entities == {}
