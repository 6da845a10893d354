"""Command line interface for MirrorSync."""

import sys
import json
import logging
from pathlib import Path
from typing import Any, Optional

import click

from .config import setup_logging, load_environment
from ..engine.fingerprint import fingerprint as compute_fingerprint
from ..engine.sync import SyncEngine
from ..engine.transforms import FieldTransformer
from ..exceptions import MirrorSyncException, NotFoundError
from ..models.config import Synchronization
from ..models.mapping import Mapping
from ..models.sync import RunResult
from ..services.store import SynchronizationStore, create_store


def _read_json(path: str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"{path} is not valid JSON: {e}")


def load_definitions(store: SynchronizationStore, path: str) -> int:
    """
    Save the synchronizations and mappings of a definitions file into a store.

    The file holds ``{"synchronizations": [...], "mappings": [...]}``.

    Returns:
        Number of definitions saved
    """
    definitions = _read_json(path)
    if not isinstance(definitions, dict):
        raise click.BadParameter(f"{path} must hold a JSON object")

    for data in definitions.get("mappings", []):
        store.save_mapping(Mapping(**data))
    for data in definitions.get("synchronizations", []):
        store.save_synchronization(Synchronization(**data))
    return len(definitions.get("mappings", [])) + len(definitions.get("synchronizations", []))


@click.group()
@click.option('--log-level', default='INFO', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']),
              help='Set the logging level')
@click.option('--env-file', type=click.Path(exists=True), help='Path to .env file')
def cli(log_level: str, env_file: Optional[str]) -> None:
    """MirrorSync source to target synchronization tool."""
    setup_logging(log_level)
    load_environment(env_file)


@cli.command(name="map")
@click.argument('mapping_file', type=click.Path(exists=True, dir_okay=False))
@click.argument('input_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--list', 'as_list', is_flag=True, help='Map every entry of the input')
def map_command(mapping_file: str, input_file: str, as_list: bool) -> None:
    """Apply the mapping in MAPPING_FILE to the document in INPUT_FILE."""
    try:
        definition = _read_json(mapping_file)
        mapping = Mapping(**{"id": Path(mapping_file).stem, **definition})
        result = FieldTransformer().transform(mapping, _read_json(input_file), as_list=as_list)
        click.echo(json.dumps(result, indent=2, ensure_ascii=False, default=str))

    except MirrorSyncException as e:
        click.echo(f"Mapping Error: {e}", err=True)
        sys.exit(1)
    except ValueError as e:
        click.echo(f"Configuration Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('input_file', type=click.Path(exists=True, dir_okay=False))
def fingerprint(input_file: str) -> None:
    """Print the content fingerprint of the document in INPUT_FILE."""
    try:
        click.echo(compute_fingerprint(_read_json(input_file)))

    except MirrorSyncException as e:
        click.echo(f"Fingerprint Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('synchronization_id')
@click.option('--definitions', type=click.Path(exists=True, dir_okay=False),
              help='JSON file with synchronizations and mappings to load first')
@click.option('--test', is_flag=True, help='Dry run: evaluate and transform without writing anything')
@click.option('--force', is_flag=True, help='Ignore stored fingerprints and update every object')
@click.option('--output', type=click.Choice(['table', 'json']), default='table',
              help='Output format')
def run(synchronization_id: str, definitions: Optional[str], test: bool, force: bool, output: str) -> None:
    """Run the synchronization SYNCHRONIZATION_ID once."""
    try:
        store = create_store()
        if definitions:
            load_definitions(store, definitions)

        result = SyncEngine(store).run(synchronization_id, test=test, force=force)

        if output == 'json':
            click.echo(result.model_dump_json(indent=2))
        else:
            _display_run_summary(result)

        if result.level.value == "ERROR":
            sys.exit(1)

    except click.ClickException:
        raise
    except NotFoundError as e:
        click.echo(f"Not Found: {e}", err=True)
        sys.exit(1)
    except MirrorSyncException as e:
        click.echo(f"Synchronization Error: {e}", err=True)
        sys.exit(1)
    except ValueError as e:
        click.echo(f"Configuration Error: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        logging.exception("Unexpected error occurred")
        click.echo(f"Unexpected error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.argument('definitions_file', type=click.Path(exists=True, dir_okay=False))
def load(definitions_file: str) -> None:
    """Save the synchronizations and mappings in DEFINITIONS_FILE to the configured store."""
    try:
        count = load_definitions(create_store(), definitions_file)
        click.echo(f"Loaded {count} definitions")

    except (MirrorSyncException, ValueError) as e:
        click.echo(f"Configuration Error: {e}", err=True)
        sys.exit(1)


@cli.command()
def cleanup() -> None:
    """Delete run and contract logs past their expiry."""
    try:
        removed = create_store().clear_expired_logs()
        click.echo(f"Removed {removed} expired log entries")

    except MirrorSyncException as e:
        click.echo(f"Cleanup Error: {e}", err=True)
        sys.exit(1)


def _display_run_summary(result: RunResult) -> None:
    """Display a run result in a table format."""
    click.echo(f"Synchronization: {result.synchronization_id}")
    click.echo(f"Level:           {result.level.value}")
    click.echo(f"Message:         {result.message}")
    if result.reschedule_at:
        click.echo(f"Retry after:     {result.reschedule_at.isoformat()}")

    click.echo("")
    click.echo(f"{'Count':<12} {'Objects':>8}")
    click.echo("-" * 21)
    for name, value in result.counts.model_dump().items():
        click.echo(f"{name:<12} {value:>8}")

    for follow_up_id, level in result.follow_ups.items():
        click.echo(f"Follow-up {follow_up_id}: {level.value}")


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
