#!/usr/bin/env python3
"""
CLI tool for Dataverse plugin registration
Lists registered plugin components and registers, updates and syncs assemblies
"""

import asyncio
import json
from dataclasses import asdict

import click
import yaml
from tabulate import tabulate

from config import Config
from errors import SyncFault, XrmFault
from main import Application, configure_logging
from models import StepMode, StepStage

NOT_ROLLED_BACK = (
    "Changes applied before the failure were not rolled back. "
    "The command can be re-run safely; it applies only what is still outstanding."
)


def _label(enum_class, value):
    """Enum member name for a raw option-set value, or the value itself."""
    try:
        return enum_class(value).name.lower().replace("_", "-")
    except ValueError:
        return value


def _load_config(config_path):
    if config_path:
        return Config.from_file(config_path)
    return Config.from_env()


def _run(ctx, operation):
    """Run an async operation against an initialized Application."""

    async def runner():
        app = Application(_load_config(ctx.obj["config_path"]))
        await app.initialize(ctx.obj["environment"])
        try:
            return await operation(app)
        finally:
            await app.stop()

    try:
        return asyncio.run(runner())
    except SyncFault as e:
        click.echo(f"Error: {e}", err=True)
        _echo_sync_fault(e)
        ctx.exit(1)
    except (XrmFault, ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(1)


def _echo_changes(
    result, labels=("Created", "Updated", "Removed", "Skipped"), err=False
):
    for label, items in (
        ("Created", result.created),
        ("Updated", result.updated),
        ("Removed", result.removed),
        ("Skipped", result.skipped_creation),
    ):
        if label in labels:
            for item in items:
                click.echo(f"  {label}: {item}", err=err)


def _echo_sync_fault(fault):
    """Report what a failed sync applied and that it is safe to re-run."""
    partial = fault.partial_result
    if partial is not None and partial.has_changes:
        click.echo("Applied before the failure:", err=True)
        _echo_changes(partial, labels=("Created", "Updated", "Removed"), err=True)
    click.echo(NOT_ROLLED_BACK, err=True)


def _echo_records(records, headers, row, output):
    if output == "json":
        click.echo(json.dumps([asdict(r) for r in records], indent=2))
    elif output == "yaml":
        click.echo(yaml.dump([asdict(r) for r in records], default_flow_style=False))
    elif not records:
        click.echo("No records found")
    else:
        click.echo(tabulate([row(r) for r in records], headers=headers, tablefmt="grid"))


output_option = click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True),
    envvar="XRM_CONFIG",
    help="Workspace config file (JSON or YAML)",
)
@click.option("--env", "environment", help="Environment name from the config file")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
)
@click.pass_context
def cli(ctx, config_path, environment, log_level):
    """Dataverse plugin registration CLI"""
    configure_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["environment"] = environment


@cli.command()
@output_option
@click.pass_context
def assemblies(ctx, output):
    """List registered plugin assemblies"""
    records = _run(ctx, lambda app: app.list_assemblies())
    _echo_records(
        records,
        ["ID", "Name", "Version", "Isolation", "Public Key Token"],
        lambda a: [a.id, a.name, a.version, a.isolation_mode, a.public_key_token],
        output,
    )


@cli.command()
@click.argument("assembly_id")
@output_option
@click.pass_context
def types(ctx, assembly_id, output):
    """List plugin types registered under an assembly"""
    records = _run(ctx, lambda app: app.list_plugin_types(assembly_id))
    _echo_records(
        records,
        ["ID", "Type Name", "Friendly Name"],
        lambda t: [t.id, t.full_name, t.friendly_name],
        output,
    )


@cli.command()
@click.argument("plugin_type_id")
@output_option
@click.pass_context
def steps(ctx, plugin_type_id, output):
    """List steps registered for a plugin type"""
    records = _run(ctx, lambda app: app.list_steps(plugin_type_id))
    _echo_records(
        records,
        ["ID", "Name", "Message", "Entity", "Stage", "Mode", "Rank", "Enabled"],
        lambda s: [
            s.id,
            s.name,
            s.message_name,
            s.primary_entity or "any",
            _label(StepStage, s.stage),
            _label(StepMode, s.mode),
            s.rank,
            "✓" if s.status == 0 else "✗",
        ],
        output,
    )


@cli.command()
@click.argument("step_id")
@output_option
@click.pass_context
def images(ctx, step_id, output):
    """List images registered for a step"""
    records = _run(ctx, lambda app: app.list_images(step_id))
    _echo_records(
        records,
        ["ID", "Name", "Type", "Alias", "Attributes"],
        lambda i: [i.id, i.name, i.image_type, i.entity_alias, i.attributes or "all"],
        output,
    )


@cli.command()
@click.argument("assembly_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--name", help="Assembly name (defaults to the file name)")
@click.option("--solution", "solution_name", help="Solution to add components to")
@click.pass_context
def register(ctx, assembly_path, name, solution_name):
    """Register a new plugin assembly and its plugin types"""
    report = _run(
        ctx,
        lambda app: app.register_assembly(
            assembly_path, name=name, solution_name=solution_name
        ),
    )
    click.echo(report.message)
    click.echo(f"ID: {report.assembly_id}")
    if report.solution_error:
        click.echo(f"Warning: {report.solution_error}", err=True)
    if report.sync_error:
        click.echo(
            f"Assembly registered, but plugins failed to sync: {report.sync_error}",
            err=True,
        )
        _echo_sync_fault(report.sync_error)
        ctx.exit(1)


@cli.command()
@click.argument("assembly_id")
@click.argument("assembly_path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def update(ctx, assembly_id, assembly_path):
    """Replace an assembly's content and sync its plugin types"""
    report = _run(ctx, lambda app: app.update_assembly(assembly_id, assembly_path))
    click.echo(report.message)
    if report.sync_error:
        click.echo(
            f"Assembly updated, but plugins failed to sync: {report.sync_error}",
            err=True,
        )
        _echo_sync_fault(report.sync_error)
        ctx.exit(1)


@cli.command()
@click.argument("assembly_id")
@click.argument("assembly_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--solution", "solution_name", help="Solution to add new components to")
@click.option(
    "--allow-create/--no-allow-create",
    default=None,
    help="Override the environment's createMissingComponents setting",
)
@click.pass_context
def sync(ctx, assembly_id, assembly_path, solution_name, allow_create):
    """Sync plugin types, steps and images with a local assembly"""
    result = _run(
        ctx,
        lambda app: app.sync(
            assembly_id,
            assembly_path,
            solution_name=solution_name,
            allow_create=allow_create,
        ),
    )
    click.echo(result.summary(allow_create))
    _echo_changes(result)


if __name__ == "__main__":
    cli()
