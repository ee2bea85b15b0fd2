"""
CLI: optia plan
Inspect and validate a student's improvement plan from the terminal.
"""
import json
import sys
from pathlib import Path

import click

# project root on sys.path so the optia package imports
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from optia.artifact_store import current_period_key, get_store  # noqa: E402
from optia.cause_tree import render_cause_map  # noqa: E402
from optia.exceptions import OptiaError  # noqa: E402
from optia.models import STAGE_KINDS, Stage  # noqa: E402
from optia.pipeline import PipelineController  # noqa: E402


def _parse_stage(raw: str) -> Stage:
    try:
        return Stage.parse(raw)
    except ValueError as e:
        raise click.BadParameter(str(e))


@click.group()
def plan():
    """Staged improvement-plan commands"""
    pass


@plan.command()
@click.option("--owner", required=True, help="Student id")
@click.option("--period", default=None, help="Period key YYYY-MM (default: current month)")
def status(owner, period):
    """Show which stages are drafted, validated and unlocked"""
    try:
        report = PipelineController().pipeline_status(owner, period)
    except OptiaError as e:
        click.echo(f"Error: {e.get_user_message()}", err=True)
        sys.exit(1)

    click.echo(f"Owner {report['owner']}, period {report['periodKey']}")
    for row in report["stages"]:
        if row["validated"]:
            mark = "validated"
        elif row["hasDraft"]:
            mark = "draft"
        elif row["unlocked"]:
            mark = "open"
        else:
            mark = "locked"
        score = f" score {row['score']['total']}" if row["score"] else ""
        click.echo(f"  [{row['stage']}] {row['title']:<24} {mark}{score}")

    if report["currentStage"] is not None:
        click.echo(f"\nNext stage to work on: {report['currentStage']}")
    else:
        click.echo("\nAll stages validated.")


@plan.command()
@click.argument("stage")
@click.option("--owner", required=True, help="Student id")
@click.option("--period", default=None, help="Period key YYYY-MM")
@click.option("--final", "show_final", is_flag=True, help="Show the validated final instead of the draft")
def show(stage, owner, period, show_final):
    """Print a stage artifact as JSON"""
    parsed = _parse_stage(stage)
    kinds = STAGE_KINDS[parsed]
    period = period or current_period_key()
    store = get_store()
    try:
        if show_final:
            artifact = store.get(owner, parsed, kinds.final, period)
        else:
            artifact = store.resolve(owner, parsed, kinds.draft, period)
    except OptiaError as e:
        click.echo(f"Error: {e.get_user_message()}", err=True)
        sys.exit(1)

    if artifact is None:
        click.echo("Nothing stored for that stage.")
        return
    click.echo(f"{artifact.kind} ({artifact.period_key}, {artifact.status.value}, v{artifact.version})")
    click.echo(json.dumps(artifact.payload, ensure_ascii=False, indent=2))


@plan.command()
@click.argument("stage")
@click.option("--owner", required=True, help="Student id")
@click.option("--period", default=None, help="Period key YYYY-MM")
def validate(stage, owner, period):
    """Run the validation gate of a stage"""
    parsed = _parse_stage(stage)
    try:
        result = PipelineController().validate(owner, parsed, period)
    except OptiaError as e:
        click.echo(f"Error: {e.get_user_message()}", err=True)
        sys.exit(1)

    if result.valid:
        click.echo(f"OK: {result.message}")
        if result.score:
            click.echo(f"Score: {result.score.get('total')} ({result.score.get('label')})")
    else:
        click.echo(f"Not valid [{result.code}]: {result.message}")
        if result.required is not None:
            click.echo(f"  current {result.current}, required {result.required}")
        sys.exit(2)


@plan.command(name="map")
@click.option("--owner", required=True, help="Student id")
@click.option("--period", default=None, help="Period key YYYY-MM")
def cause_map(owner, period):
    """Print the cause tree as a text map"""
    try:
        draft = get_store().resolve(owner, Stage.ISHIKAWA, STAGE_KINDS[Stage.ISHIKAWA].draft, period or current_period_key())
    except OptiaError as e:
        click.echo(f"Error: {e.get_user_message()}", err=True)
        sys.exit(1)
    click.echo(render_cause_map(draft.payload if draft else None))


if __name__ == "__main__":
    plan()
