"""CLI entrypoint for task-engine."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from task_engine import __version__
from task_engine.orchestrator.controllers import (
    CancelCommand,
    CreateTaskCommand,
    DriveTaskCommand,
    HistoryCommand,
    InspectCommand,
    ListContextsCommand,
    OrchestratorCliController,
    ReplayCommand,
    RespondCommand,
    SkipCommand,
)
from task_engine.orchestrator.errors import TaskEngineError

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_DB_PATH_HELP = "SQLite DB path."


@click.group()
@click.version_option(version=__version__, prog_name="task-engine")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for engine messages on stderr.",
)
def task_engine(log_level: str) -> None:
    """Event-sourced task orchestration engine."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@task_engine.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--template",
    "template_id",
    default=None,
    help="Built-in template id. Defaults to business_onboarding.",
)
@click.option(
    "--template-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON task template file; overrides --template.",
)
@click.option("--data", "initial_data", default=None, help="Initial task data as a JSON object.")
@click.option("--tenant", "tenant_id", default=None, help="Tenant id. Defaults to config.")
@click.option(
    "--drive/--no-drive",
    default=False,
    show_default=True,
    help="Drive the new task right away.",
)
def create(  # noqa: PLR0913
    db_path: Path | None,
    template_id: str | None,
    template_file: Path | None,
    initial_data: str | None,
    tenant_id: str | None,
    drive: bool,
) -> None:
    """Create a task context from a template."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.create(
            CreateTaskCommand(
                db_path=db_path,
                template_id=template_id,
                template_file=template_file,
                initial_data=initial_data,
                tenant_id=tenant_id,
                drive=drive,
            ),
        ),
    )


@task_engine.command("drive")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("context_id")
def drive(db_path: Path | None, context_id: str) -> None:
    """Run phases until the task needs input or ends."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.drive(
            DriveTaskCommand(db_path=db_path, context_id=context_id),
        ),
    )


@task_engine.command("respond")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--value",
    default=None,
    help="Plain answer, stored under the field the request asks for.",
)
@click.option("--json", "json_payload", default=None, help="Answer as a JSON object.")
@click.option("--user", "user_id", default="user", show_default=True, help="Responding user id.")
@click.argument("context_id")
@click.argument("request_id")
def respond(  # noqa: PLR0913
    db_path: Path | None,
    value: str | None,
    json_payload: str | None,
    user_id: str,
    context_id: str,
    request_id: str,
) -> None:
    """Answer a pending UI request and resume the task."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.respond(
            RespondCommand(
                db_path=db_path,
                context_id=context_id,
                request_id=request_id,
                value=value,
                json_payload=json_payload,
                user_id=user_id,
            ),
        ),
    )


@task_engine.command("skip")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--reason", default="Skipped by user", show_default=True, help="Skip reason.")
@click.option("--user", "user_id", default="user", show_default=True, help="Skipping user id.")
@click.argument("context_id")
@click.argument("request_id")
def skip(
    db_path: Path | None,
    reason: str,
    user_id: str,
    context_id: str,
    request_id: str,
) -> None:
    """Skip a pending UI request and resume the task."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.skip(
            SkipCommand(
                db_path=db_path,
                context_id=context_id,
                request_id=request_id,
                reason=reason,
                user_id=user_id,
            ),
        ),
    )


@task_engine.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--reason", default="Cancelled by user", show_default=True, help="Cancel reason.")
@click.argument("context_id")
def cancel(db_path: Path | None, reason: str, context_id: str) -> None:
    """Cancel a task that has not ended yet."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.cancel(
            CancelCommand(db_path=db_path, context_id=context_id, reason=reason),
        ),
    )


@task_engine.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--show-data", is_flag=True, default=False, help="Print derived task data.")
@click.argument("context_id")
def inspect(db_path: Path | None, show_data: bool, context_id: str) -> None:
    """Show the current derived state of a task."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.inspect(
            InspectCommand(db_path=db_path, context_id=context_id, show_data=show_data),
        ),
    )


@task_engine.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--show-data", is_flag=True, default=False, help="Print entry payloads.")
@click.argument("context_id")
def history(db_path: Path | None, show_data: bool, context_id: str) -> None:
    """Print the full ordered history of a task."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.history(
            HistoryCommand(db_path=db_path, context_id=context_id, show_data=show_data),
        ),
    )


@task_engine.command("replay")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--sequence",
    "sequence_number",
    type=click.IntRange(min=1),
    default=None,
    help="Rebuild state right after this entry.",
)
@click.option("--at", default=None, help="Rebuild state as of this ISO-8601 timestamp.")
@click.argument("context_id")
def replay(
    db_path: Path | None,
    sequence_number: int | None,
    at: str | None,
    context_id: str,
) -> None:
    """Rebuild a past state and show what changed since."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.replay(
            ReplayCommand(
                db_path=db_path,
                context_id=context_id,
                sequence_number=sequence_number,
                at=at,
            ),
        ),
    )


@task_engine.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--tenant", "tenant_id", default=None, help="Only contexts of this tenant.")
def list_contexts(db_path: Path | None, tenant_id: str | None) -> None:
    """List task contexts."""

    _emit(
        lambda: ORCHESTRATOR_CONTROLLER.list_contexts(
            ListContextsCommand(db_path=db_path, tenant_id=tenant_id),
        ),
    )


def _emit(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except (TaskEngineError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    task_engine()
