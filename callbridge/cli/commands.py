"""CLI commands for callbridge."""

import asyncio
import platform
import signal
import sys

import typer
from loguru import logger
from rich.console import Console

from callbridge import __version__, __logo__

app = typer.Typer(
    name="callbridge",
    help=f"{__logo__} callbridge - Outbound calls and phone conversations for AI agents",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} callbridge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """callbridge - Outbound calls and phone conversations for AI agents."""
    pass


def _configure_logging(verbose: bool) -> None:
    # stdout belongs to the protocol in proxy mode, so logs always go to stderr
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


# ============================================================================
# Webhook service
# ============================================================================


@app.command()
def serve(
    host: str = typer.Option("", "--host", help="Host to bind (default: voice.host)"),
    port: int = typer.Option(0, "--port", "-p", help="Port to bind (default: voice.port)"),
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
):
    """Start the webhook service."""
    from callbridge.config.loader import load_config
    from callbridge.voice.service import VoiceService

    _configure_logging(verbose)
    config = load_config()

    try:
        service = VoiceService(config)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/red]")
        console.print("Set it in ~/.callbridge/config.json or via CALLBRIDGE_TELNYX__API_KEY")
        raise typer.Exit(1)

    bind_host = host or config.voice.host
    bind_port = port or config.voice.port

    if service.synthesis.uses_native_speech:
        console.print("[yellow]⚠[/yellow] No TTS key configured, using Telnyx native speak")
    else:
        console.print(f"[green]✓[/green] TTS: {config.tts.provider}")
    console.print(f"[green]✓[/green] LLM: {config.llm.model}")
    if config.voice.api_key:
        console.print("[green]✓[/green] Internal endpoints require an API key")
    console.print(f"[green]✓[/green] Webhook: http://{bind_host}:{bind_port}/webhook")

    async def run():
        shutdown_event = asyncio.Event()

        def signal_handler():
            console.print("\n[yellow]Shutting down...[/yellow]")
            shutdown_event.set()

        if platform.system() == "Windows":
            # Windows asyncio doesn't support loop.add_signal_handler
            signal.signal(signal.SIGINT, lambda s, f: signal_handler())
            signal.signal(signal.SIGTERM, lambda s, f: signal_handler())
        else:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, signal_handler)

        try:
            await service.start(host=bind_host, port=bind_port)

            shutdown_task = asyncio.create_task(shutdown_event.wait())
            await asyncio.wait(
                [service.server_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED,
            )
            shutdown_task.cancel()
        finally:
            console.print("[dim]Cleaning up...[/dim]")
            await service.stop()
            console.print("[green]✓[/green] Shutdown complete")

    asyncio.run(run())


# ============================================================================
# Protocol proxy
# ============================================================================


@app.command()
def proxy(
    verbose: bool = typer.Option(False, "--verbose", help="Verbose output"),
):
    """Run the MCP proxy on stdin/stdout in front of the Telnyx MCP server."""
    from callbridge.config.loader import load_config
    from callbridge.errors import DownstreamUnavailable
    from callbridge.mcp.client import ResultClient
    from callbridge.mcp.proxy import create_proxy

    _configure_logging(verbose)
    err_console = Console(stderr=True)
    config = load_config()

    async def run() -> int:
        results = ResultClient(
            server_url=config.proxy.server_url,
            api_key=config.voice.api_key,
            timeout=config.proxy.request_timeout_seconds,
        )
        relay = create_proxy(config, results)
        logger.info(f"Proxy started with synthetic tools: {', '.join(relay.tools.tool_names)}")
        try:
            return await relay.run(config.get_subordinate_argv())
        finally:
            await results.aclose()

    try:
        code = asyncio.run(run())
    except DownstreamUnavailable as e:
        err_console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        code = 0
    raise typer.Exit(code)


# ============================================================================
# Status
# ============================================================================


@app.command()
def status():
    """Show callbridge configuration status."""
    from callbridge.config.loader import load_config, get_config_path

    config_path = get_config_path()

    console.print(f"{__logo__} callbridge Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")

    config = load_config()

    def mark(value: str) -> str:
        return "[green]✓[/green]" if value else "[dim]not set[/dim]"

    console.print(f"Telnyx API: {mark(config.telnyx.api_key)}")
    console.print(f"Default from number: {config.telnyx.default_from_number or '[dim]not set[/dim]'}")
    tts_status = f"[green]✓ {config.tts.provider}[/green]" if config.tts_enabled else "[dim]native speak[/dim]"
    console.print(f"TTS: {tts_status}")
    console.print(f"LLM: {config.llm.model} {mark(config.llm.api_key)}")
    console.print(f"Webhook service: http://{config.voice.host}:{config.voice.port}")
    console.print(f"Proxy target: {config.proxy.server_url}")
    console.print(f"Subordinate: {' '.join(config.get_subordinate_argv())}")


if __name__ == "__main__":
    app()
