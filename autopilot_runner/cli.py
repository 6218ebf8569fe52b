"""Command line interface for running autopilot flows."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import typer
import yaml

from .auth import TokenProvider
from .config import AutopilotConfig, load_config
from .contracts import FlowVariant, LogEvent, RunEvent, RunMode, StepEvent
from .controller import RunController
from .errors import AutopilotError
from .flows import VARIANTS, steps_for
from .flows.reviews import as_list
from .persistence import get_snapshot_store
from .platform import PlatformClient, PlatformSession

app = typer.Typer(help="CLI for autopilot end-to-end challenge flows")

# Command groups
flows_app = typer.Typer(help="Inspect the available flow variants")
snapshot_app = typer.Typer(help="Inspect or reset the last-run snapshot")
config_app = typer.Typer(help="Inspect the effective configuration")
refdata_app = typer.Typer(help="Fetch reference data from the platform")
challenge_app = typer.Typer(help="Inspect a challenge on the platform")

app.add_typer(flows_app, name="flows")
app.add_typer(snapshot_app, name="snapshot")
app.add_typer(config_app, name="config")
app.add_typer(refdata_app, name="refdata")
app.add_typer(challenge_app, name="challenge")

_state = {"config_path": None}


@app.callback()
def main(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a YAML config file"),
    log_level: str = typer.Option("WARNING", "--log-level", help="Process log level"),
) -> None:
    """Autopilot CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["config_path"] = str(config) if config else None


def _config() -> AutopilotConfig:
    try:
        return load_config(_state["config_path"])
    except AutopilotError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _variant(name: str) -> FlowVariant:
    try:
        return FlowVariant.parse(name)
    except ValueError:
        choices = ", ".join(v.value for v in FlowVariant)
        typer.secho(f"Unknown flow variant '{name}'. Choose one of: {choices}", fg=typer.colors.RED)
        raise typer.Exit(code=2)


def _echo_json(value: Any) -> None:
    typer.echo(json.dumps(value, indent=2, default=str))


def _format_event(event: RunEvent) -> str:
    if isinstance(event, StepEvent):
        line = f"step {event.step}: {event.status.value}"
        if event.failed_requests:
            line += f" ({len(event.failed_requests)} failed call(s))"
        return line
    line = f"[{event.level.value}] {event.message}"
    if event.progress is not None:
        line += f" ({event.progress:.0f}%)"
    if event.data is not None:
        line += f" {json.dumps(event.data, default=str)}"
    return line


# ----------------------------------------------------------------------
# Runs


async def _stream_run(
    config: AutopilotConfig, variant: FlowVariant, to_step: Optional[str], as_json: bool
) -> bool:
    """Stream one run to the terminal. Returns ``False`` when the run failed."""
    controller = RunController(config)
    mode = RunMode.TO_STEP if to_step else RunMode.FULL
    failed = False
    try:
        async with contextlib.aclosing(controller.stream(variant, mode, to_step)) as events:
            async for event in events:
                if isinstance(event, LogEvent) and event.message == "Run failed":
                    failed = True
                if as_json:
                    typer.echo(event.model_dump_json(exclude_none=True))
                elif isinstance(event, StepEvent) and event.status.value == "failure":
                    typer.secho(_format_event(event), fg=typer.colors.RED)
                else:
                    typer.echo(_format_event(event))
    finally:
        await controller.aclose()
    return not failed


@app.command("run")
def run(
    variant: str,
    to_step: Optional[str] = typer.Option(None, "--to-step", help="Stop right after this step"),
    as_json: bool = typer.Option(False, "--json", help="Print events as JSON lines"),
) -> None:
    """
    Run a flow variant end to end, or up to a step.

    Events are streamed as they happen. Ctrl-C cancels the run.

    Example:
        autopilot run full
        autopilot run first2finish --to-step activate
    """
    flow_variant = _variant(variant)
    config = _config()
    if to_step and to_step not in steps_for(flow_variant, config):
        typer.secho(f"Unknown step '{to_step}' for flow {flow_variant.value}", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    try:
        succeeded = asyncio.run(_stream_run(config, flow_variant, to_step, as_json))
    except KeyboardInterrupt:
        typer.secho("Run cancelled", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)
    if not succeeded:
        raise typer.Exit(code=1)


# ----------------------------------------------------------------------
# Flows


@flows_app.command("list")
def flows_list() -> None:
    """List flow variants with their state machine and config section."""
    for variant, entry in VARIANTS.items():
        typer.echo(f"{variant.value}\t{entry.flow_class.__name__}\tflows.{entry.config_attr}")


@flows_app.command("steps")
def flows_steps(variant: str) -> None:
    """Print the steps a run of VARIANT executes, in order."""
    flow_variant = _variant(variant)
    for index, step in enumerate(steps_for(flow_variant, _config()), start=1):
        typer.echo(f"{index:2d}. {step}")


# ----------------------------------------------------------------------
# Snapshot and config


@snapshot_app.command("show")
def snapshot_show() -> None:
    """Print the last-run snapshot as JSON."""
    store = get_snapshot_store(config=_config())
    snapshot = asyncio.run(store.read())
    data = snapshot.to_json_dict()
    if not data:
        typer.echo("Snapshot is empty")
        return
    _echo_json(data)


@snapshot_app.command("reset")
def snapshot_reset() -> None:
    """Clear the last-run snapshot."""
    store = get_snapshot_store(config=_config())
    asyncio.run(store.reset())
    typer.echo("Snapshot reset")


@config_app.command("show")
def config_show() -> None:
    """Print the normalised configuration as YAML."""
    config = _config()
    typer.echo(yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False))


# ----------------------------------------------------------------------
# Platform queries


async def _with_session(config: AutopilotConfig, action: Callable[[PlatformSession], Awaitable[Any]]) -> Any:
    token = await TokenProvider(config.auth.secrets_path).get_token()
    async with PlatformClient(config.api.base_url, config.api.timeout) as client:
        return await action(client.bind(token))


def _query(action: Callable[[PlatformSession], Awaitable[Any]]) -> Any:
    config = _config()
    try:
        return asyncio.run(_with_session(config, action))
    except AutopilotError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)


@refdata_app.command("challenge-types")
def refdata_challenge_types() -> None:
    """List challenge types."""
    _echo_json(_query(lambda api: api.list_challenge_types()))


@refdata_app.command("challenge-tracks")
def refdata_challenge_tracks() -> None:
    """List challenge tracks."""
    _echo_json(_query(lambda api: api.list_challenge_tracks()))


@refdata_app.command("scorecards")
def refdata_scorecards(
    challenge_type: str = typer.Option(..., "--type", help="Challenge type name"),
    challenge_track: str = typer.Option(..., "--track", help="Challenge track name"),
) -> None:
    """List scorecards for a challenge type and track."""
    _echo_json(_query(lambda api: api.list_scorecards(challenge_type, challenge_track)))


@challenge_app.command("reviews")
def challenge_reviews(challenge_id: str) -> None:
    """List the reviews of a challenge."""
    reviews = as_list(_query(lambda api: api.list_reviews(challenge_id)))
    if not reviews:
        typer.echo("No reviews found")
        return
    for review in reviews:
        typer.echo(
            "\t".join(
                "" if review.get(key) is None else str(review[key])
                for key in ("id", "submissionId", "resourceId", "status", "finalScore")
            )
        )


if __name__ == "__main__":
    app()
