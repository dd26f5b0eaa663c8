"""CLI entry point for codecoach."""

from pathlib import Path
from typing import Optional

import click


def _settings(ctx: click.Context):
    from codecoach.config.logs import configure_logging
    from codecoach.config.settings import Settings

    settings = ctx.obj.get("settings")
    if settings is None:
        settings = Settings.load(ctx.obj.get("config_path"))
        configure_logging(ctx.obj.get("log_level") or settings.log_level)
        ctx.obj["settings"] = settings
    return settings


def _coach(ctx: click.Context):
    from codecoach.engine.coach import Coach

    return Coach(settings=_settings(ctx))


@click.group(invoke_without_command=True)
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Path to config.yaml (default ~/.codecoach/config.yaml)")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], log_level: Optional[str]) -> None:
    """codecoach: struggle detection, graduated hints and spaced review."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = log_level
    if ctx.invoked_subcommand is None:
        ctx.invoke(serve)


@main.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the JSON-lines bridge on stdin/stdout."""
    import asyncio

    from codecoach.server.__main__ import main as serve_main

    asyncio.run(serve_main(_settings(ctx)))


@main.command()
@click.option("--user", "user_id", default=None, help="User id (default from config)")
@click.pass_context
def due(ctx: click.Context, user_id: Optional[str]) -> None:
    """List review items that are due now."""
    import asyncio

    async def _due():
        coach = _coach(ctx)
        items = await coach.due_now(user_id or coach.settings.default_user_id)
        if not items:
            click.echo("Nothing due.")
        for item in items:
            click.echo(
                f"  {item.due_at:%Y-%m-%d %H:%M}  {item.kind.value:<8} {item.item_key}"
                f"  (every {item.interval_days}d, ef {item.ease_factor:.2f})"
            )

    asyncio.run(_due())


@main.command()
@click.option("--user", "user_id", default=None, help="User id (default from config)")
@click.pass_context
def patterns(ctx: click.Context, user_id: Optional[str]) -> None:
    """List recurring mistakes that need reinforcement."""
    import asyncio

    async def _patterns():
        coach = _coach(ctx)
        found = await coach.patterns_needing_reinforcement(user_id or coach.settings.default_user_id)
        if not found:
            click.echo("No recurring mistakes.")
        for pattern in found:
            click.echo(
                f"  {pattern.error_kind:<20} x{pattern.recent_frequency}"
                f"  severity {pattern.severity:.2f}  {pattern.pattern_key}"
            )

    asyncio.run(_patterns())


@main.command()
@click.pass_context
def config(ctx: click.Context) -> None:
    """Show effective settings."""
    import yaml

    data = _settings(ctx).model_dump(mode="json")
    if data["claude"].get("api_key"):
        data["claude"]["api_key"] = "<set>"
    click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
