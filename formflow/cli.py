"""Command-line interface for formflow."""

import asyncio
import json
import logging
import sys

import click

from formflow.config import make_config
from formflow.errors import FormflowError
from formflow.machine import MachineConfig, initial_state, required_states, state_names
from formflow.setup import create_formflow_services
from formflow.validation import validate_machine_config


def _load_json(path: str) -> dict:
    with open(path, "rb") as fh:
        try:
            data = json.load(fh)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"{path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise click.BadParameter(f"{path} does not contain a JSON object")
    return data


# ---------------------------------------------------------------------------
# Click CLI
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--db",
    envvar="DATABASE_URL",
    default=None,
    help="Database connection string (default: from formflow.toml)",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Path to formflow.toml",
)
@click.pass_context
def cli(ctx, db, config_path):
    """formflow - versioned forms driven by workflow state machines"""
    config = make_config(config_path)
    if db:
        config.database_url = db
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command("validate")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
def validate(file):
    """Validate a machine config stored as JSON in FILE.

    Prints the declared states and the states that need a form.
    """
    raw = _load_json(file)
    errors = validate_machine_config(raw)
    if errors:
        for err in errors:
            click.echo(f"  {err}", err=True)
        sys.exit(1)

    config = MachineConfig.model_validate(raw)
    click.echo("✓ Machine config looks valid.")
    click.echo(f"Initial state:   {initial_state(config)}")
    click.echo(f"States:          {', '.join(state_names(config))}")
    click.echo(f"Required states: {', '.join(required_states(config)) or '-'}")


@cli.command("initdb")
@click.pass_context
def initdb(ctx):
    """Create the formflow tables."""
    config = ctx.obj["config"]

    async def _run():
        async with create_formflow_services(config=config, create_tables=True):
            pass

    asyncio.run(_run())
    click.echo("Tables created.")


@cli.command("show")
@click.argument("instance_id", type=int)
@click.pass_context
def show(ctx, instance_id):
    """Show state, status and next events of a workflow instance."""
    config = ctx.obj["config"]

    async def _run():
        async with create_formflow_services(config=config, create_tables=False) as resources:
            instance = await resources.instances.get(instance_id)
            events = await resources.instances.next_events(instance_id)
            click.echo(
                f"\nInstance: {instance.id}  definition={instance.workflow_def_id}"
            )
            click.echo(f"State:       {instance.current_state}")
            click.echo(f"Status:      {instance.status}")
            click.echo(f"Next events: {', '.join(events) or '-'}")
            click.echo(f"Updated at:  {instance.updated_at}")

    try:
        asyncio.run(_run())
    except FormflowError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command("history")
@click.argument("instance_id", type=int)
@click.argument("form_def_id", type=int)
@click.pass_context
def history(ctx, instance_id, form_def_id):
    """List saved form data versions of an instance with their patches."""
    config = ctx.obj["config"]

    async def _run():
        async with create_formflow_services(config=config, create_tables=False) as resources:
            versions = await resources.store.list_versions(instance_id, form_def_id)
            if not versions:
                click.echo(
                    f"No data saved for instance {instance_id} on form {form_def_id}"
                )
                return

            click.echo(f"\n{'Version':<10} {'Created By':<20} {'Created At':<35} Patch")
            click.echo("-" * 100)
            for v in versions:
                click.echo(
                    f"{v.version:<10} {v.created_by:<20} {str(v.created_at):<35} "
                    f"{json.dumps(v.patch)}"
                )

    try:
        asyncio.run(_run())
    except FormflowError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
