"""opencode-headless command-line interface."""

from __future__ import annotations

import asyncio
import functools
import logging
import sys
from collections.abc import Callable
from typing import Any

import click

from ..client import HeadlessClient
from ..config import HeadlessConfig, PermissionConfig, load_config
from ..errors import HeadlessError
from ..permissions import PermissionStrategy
from ..types import MessageChunk, ToolCallInfo

PERMISSION_CHOICES = {
    "safe": PermissionConfig(preset="safe_defaults"),
    "auto-approve": PermissionConfig(strategy=PermissionStrategy.AUTO_APPROVE),
    "auto-reject": PermissionConfig(strategy=PermissionStrategy.AUTO_REJECT),
}


def _client_options(func: Callable[..., Any]) -> Callable[..., Any]:
    options = (
        click.option("--base-url", default=None, help="Server URL (overrides the config file)."),
        click.option(
            "--config",
            "config_path",
            type=click.Path(exists=True, dir_okay=False, path_type=str),
            default=None,
            help="YAML configuration file.",
        ),
        click.option("--env", default=None, help="Environment overlay from the config file."),
        click.option("--model", default=None, help="Model as provider/model."),
        click.option("--agent", default=None, help="Agent name."),
        click.option("--timeout", "timeout_s", type=float, default=None, help="Timeout in seconds."),
        click.option(
            "--permissions",
            type=click.Choice(sorted(PERMISSION_CHOICES), case_sensitive=False),
            default=None,
            help="Permission handling for tool calls.",
        ),
        click.option("--verbose", "-v", is_flag=True, help="Enable debug logging."),
    )
    for option in reversed(options):
        func = option(func)
    return func


def build_config(
    *,
    config_path: str | None,
    env: str | None,
    base_url: str | None,
    model: str | None,
    agent: str | None,
    timeout_s: float | None,
    permissions: str | None,
) -> HeadlessConfig:
    config = load_config(config_path, env=env) if config_path else HeadlessConfig()
    updates: dict[str, Any] = {}
    if base_url:
        updates["base_url"] = base_url
    if model:
        updates["model"] = model
    if agent:
        updates["agent"] = agent
    if timeout_s is not None:
        updates["timeout_s"] = timeout_s
    if permissions:
        updates["permissions"] = PERMISSION_CHOICES[permissions.lower()]
    return config.model_copy(update=updates)


def _run(coro_factory: Callable[..., Any]) -> Callable[..., None]:
    """Run an async command body, mapping library errors to exit code 1."""

    @functools.wraps(coro_factory)
    def _wrapper(*, verbose: bool, **kwargs: Any) -> None:
        if verbose:
            logging.basicConfig(level=logging.DEBUG)
        config_kwargs = {
            key: kwargs.pop(key)
            for key in ("config_path", "env", "base_url", "model", "agent", "timeout_s", "permissions")
        }
        try:
            config = build_config(**config_kwargs)
            asyncio.run(coro_factory(config, **kwargs))
        except HeadlessError as e:
            click.echo(f"✗ {e}", err=True)
            sys.exit(1)

    return _wrapper


@click.group()
@click.version_option(package_name="opencode-headless")
def app() -> None:
    """opencode-headless CLI - drive a remote session from the terminal."""


@app.command()
@click.argument("message")
@click.option("--session", "session_id", default=None, help="Reuse an existing session id.")
@_client_options
@_run
async def chat(config: HeadlessConfig, message: str, session_id: str | None) -> None:
    """Send MESSAGE and print the complete response."""

    async with await HeadlessClient.create(config) as client:
        response = await client.chat(message, session_id=session_id)
        click.echo(response.text)


@app.command()
@click.argument("message")
@click.option("--session", "session_id", default=None, help="Reuse an existing session id.")
@_client_options
@_run
async def stream(config: HeadlessConfig, message: str, session_id: str | None) -> None:
    """Send MESSAGE and print the response as it streams."""

    def on_data(chunk: MessageChunk) -> None:
        click.echo(chunk.text, nl=False)

    def on_tool_call(tool_call: ToolCallInfo) -> None:
        click.echo(f"\n[{tool_call.name}] {tool_call.status}", err=True)

    async with await HeadlessClient.create(config) as client:
        handle = client.chat_stream(
            message,
            session_id=session_id,
            on_data=on_data,
            on_tool_call=on_tool_call,
        )
        await handle.wait()
        click.echo("")


@app.command()
@_client_options
@_run
async def sessions(config: HeadlessConfig) -> None:
    """List sessions known to the server."""

    async with await HeadlessClient.create(config) as client:
        for session in await client.list_sessions():
            click.echo(f"{session.id}\t{session.title or ''}")


if __name__ == "__main__":  # pragma: no cover
    app()
