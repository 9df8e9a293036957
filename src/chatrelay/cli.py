"""CLI entry point for chatrelay."""

from __future__ import annotations

import asyncio
import logging

import typer
from rich.console import Console

from chatrelay.config import BridgeConfig

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="chatrelay",
    help="Bridge an agent server's event stream into chat conversations.",
    no_args_is_help=True,
)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Request lines drown out the bridge's own logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)


@app.command()
def run(
    url: str | None = typer.Option(
        None, "--url", "-u", help="Agent server base URL (default: from env/config)."
    ),
    directory: str | None = typer.Option(
        None, "--directory", "-d", help="Project directory of the agent sessions."
    ),
    no_global: bool = typer.Option(
        False, "--no-global", help="Do not subscribe to the global event stream."
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable debug logging."
    ),
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Bridge an agent server to this terminal."""
    setup_logging(verbose)

    config = BridgeConfig.load(config_file)
    if url:
        config.agent.url = url
    if directory:
        config.agent.directory = directory
    if no_global:
        config.agent.use_global_stream = False

    typer.echo("chatrelay v0.1.0")
    typer.echo(f"Agent: {config.agent.url}")
    if config.agent.directory:
        typer.echo(f"Directory: {config.agent.directory}")
    typer.echo("---")

    try:
        asyncio.run(_run_bridge(config))
    except KeyboardInterrupt:
        typer.echo("\nInterrupted.")


async def _run_bridge(config: BridgeConfig) -> None:
    from chatrelay.adapters.console import CONSOLE_ADAPTER_KEY, ConsoleAdapter
    from chatrelay.agent.http import HttpAgentApi
    from chatrelay.bridge.mux import AdapterMux
    from chatrelay.events import listener
    from chatrelay.events.state import BridgeState
    from chatrelay.flow.incoming import IncomingFlow

    api = HttpAgentApi(
        config.agent.url,
        directory=config.agent.directory,
        timeout=config.agent.timeout,
        supports_global=config.agent.use_global_stream,
    )
    adapter = ConsoleAdapter()
    mux = AdapterMux({CONSOLE_ADAPTER_KEY: adapter})
    state = BridgeState.from_config(config)
    flow = IncomingFlow(api, mux, CONSOLE_ADAPTER_KEY, state)

    tasks = listener.start(api, mux, state)
    try:
        await adapter.read_loop(flow)
    finally:
        listener.stop(state, cancel=True)
        await asyncio.gather(*tasks, return_exceptions=True)
        await api.aclose()


@app.command("config")
def show_config(
    config_file: str | None = typer.Option(
        None, "--config", "-c", help="Config file path."
    ),
) -> None:
    """Print the resolved configuration."""
    config = BridgeConfig.load(config_file)
    Console().print_json(config.model_dump_json())


if __name__ == "__main__":
    app()
