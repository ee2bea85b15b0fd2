from click.testing import CliRunner

from cli.plan_cmd import plan
from optia.artifact_store import get_store
from optia.models import STAGE_KINDS, Stage

PERIOD = "2026-03"


def test_validate_and_status_commands():
    get_store().put("student-1", Stage.CONTEXT, STAGE_KINDS[Stage.CONTEXT].draft, PERIOD,
                    {"sector": "Food", "products": ["Juice"], "process_focus": ["Bottling"]})
    runner = CliRunner()

    validated = runner.invoke(plan, ["validate", "context", "--owner", "student-1", "--period", PERIOD])
    status = runner.invoke(plan, ["status", "--owner", "student-1", "--period", PERIOD])

    assert validated.exit_code == 0
    assert validated.output.startswith("OK:")
    assert "Next stage to work on: 1" in status.output


def test_validate_failure_exits_with_code_2():
    result = CliRunner().invoke(plan, ["validate", "pareto", "--owner", "student-1", "--period", PERIOD])
    assert result.exit_code == 2
    assert "UPSTREAM_NOT_FINALIZED" in result.output


def test_map_and_show_on_empty_store():
    runner = CliRunner()

    cause_map = runner.invoke(plan, ["map", "--owner", "student-1", "--period", PERIOD])
    shown = runner.invoke(plan, ["show", "ishikawa", "--owner", "student-1", "--period", PERIOD])

    assert cause_map.output.startswith("Problem: (no problem yet)")
    assert "Nothing stored" in shown.output


def test_unknown_stage_is_a_usage_error():
    result = CliRunner().invoke(plan, ["show", "stage-nine", "--owner", "student-1"])
    assert result.exit_code == 2
