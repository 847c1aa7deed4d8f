"""Command-line front end for the runtime orchestrator."""

import asyncio
import json
import logging
from dataclasses import asdict
from typing import Any, Awaitable, Callable, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from runtimeworks.logging_utils import configure_logging

from .config import OrchestratorConfig
from .config_loader import list_env_overrides, update_config_file
from .events import Event, InstallProgress
from .service import RuntimeOrchestrator, build_orchestrator

app = typer.Typer(
    name="runtimeworks",
    help="Install, start, warm up and stop the local Ollama runtime",
    no_args_is_help=True,
)
console = Console()


def _build() -> RuntimeOrchestrator:
    return build_orchestrator(OrchestratorConfig.load())


def _print_progress(event: Event) -> None:
    if isinstance(event, InstallProgress):
        console.print(
            f"[cyan]{event.stage:>11}[/cyan] {event.progress:3d}%  {event.message}"
        )


def _run(
    operation: Callable[[RuntimeOrchestrator], Awaitable[dict]],
    *,
    show_progress: bool = False,
) -> dict:
    async def _main() -> dict:
        orch = _build()
        if show_progress:
            orch.events.subscribe(_print_progress)
        try:
            return await operation(orch)
        finally:
            await orch.aclose()

    return asyncio.run(_main())


def _emit(result: dict[str, Any]) -> None:
    typer.echo(json.dumps(result, indent=2, default=str))
    if not result.get("success", True):
        raise typer.Exit(1)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log to stderr too"),
) -> None:
    configure_logging(
        "runtimeworks",
        level=logging.DEBUG if verbose else logging.INFO,
        include_console=verbose,
    )


@app.command("status")
def status() -> None:
    """Show whether Ollama is installed and running."""
    _emit(_run(lambda orch: orch.get_status()))


@app.command("health")
def health() -> None:
    result = _run(lambda orch: orch.health_check())
    typer.echo(json.dumps(result, indent=2, default=str))
    if not result.get("healthy"):
        raise typer.Exit(1)


@app.command("install")
def install() -> None:
    """Download and install Ollama, then start it."""
    _emit(_run(lambda orch: orch.install(), show_progress=True))


@app.command("start")
def start() -> None:
    _emit(_run(lambda orch: orch.ensure_ready()))


@app.command("models")
def models(
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """List installed models with their warm-up state."""
    result = _run(lambda orch: orch.get_models())
    if as_json or not result.get("success"):
        _emit(result)
        return

    table = Table(title="Ollama models")
    table.add_column("Name", style="bold")
    table.add_column("Size")
    table.add_column("Description")
    table.add_column("Status")
    for model in result["models"]:
        status_text = model["status"]
        if model["installing"]:
            status_text = f"pulling {model['progress']}%"
        table.add_row(
            model["display_name"], model["size"], model["description"], status_text
        )
    console.print(table)


@app.command("suggestions")
def suggestions() -> None:
    """List models as reported by `ollama list`."""
    _emit(_run(lambda orch: orch.get_model_suggestions()))


@app.command("pull")
def pull(name: str = typer.Argument(..., help="Model name, e.g. llama3")) -> None:
    _emit(_run(lambda orch: orch.pull_model(name), show_progress=True))


@app.command("warm")
def warm(
    name: str = typer.Argument(..., help="Model to load into memory"),
    force: bool = typer.Option(False, "--force", help="Probe even if already warm"),
) -> None:
    _emit(_run(lambda orch: orch.warm_up_model(name, force)))


@app.command("autowarm")
def autowarm() -> None:
    """Warm the model selected in the configuration."""
    _emit(_run(lambda orch: orch.auto_warm_up()))


@app.command("shutdown")
def shutdown(
    force: bool = typer.Option(False, "--force", help="Skip the graceful quit"),
) -> None:
    _emit(_run(lambda orch: orch.shutdown(force)))


@app.command("serve")
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
) -> None:
    """Run the HTTP control API."""
    import uvicorn

    from .app import create_app

    cfg = OrchestratorConfig.load()
    uvicorn.run(
        create_app(build_orchestrator(cfg)),
        host=host or cfg.host,
        port=port or cfg.port,
    )


@app.command("config")
def config(
    set_values: List[str] = typer.Option(
        [], "--set", help="Persist FIELD=VALUE into the config file"
    ),
) -> None:
    """Show the effective configuration, optionally updating fields first."""
    if set_values:
        updates: dict[str, str] = {}
        for item in set_values:
            key, sep, value = item.partition("=")
            if not sep or not key.strip():
                typer.echo(f"Expected FIELD=VALUE, got {item!r}", err=True)
                raise typer.Exit(2)
            updates[key.strip()] = value.strip()
        try:
            cfg = update_config_file(updates)
        except KeyError as exc:
            typer.echo(str(exc.args[0]), err=True)
            raise typer.Exit(2)
    else:
        cfg = OrchestratorConfig.load()

    typer.echo(
        json.dumps(
            {"config": asdict(cfg), "env_overrides": list_env_overrides()},
            indent=2,
        )
    )


if __name__ == "__main__":  # pragma: no cover
    app()
