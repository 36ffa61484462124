"""Command-line entry points: run the relay, or chat with one from a terminal."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
from rich.console import Console
from rich.markup import escape

from chat_relay import __version__
from chat_relay.client.session import ChatSession, RetryExhaustedError
from chat_relay.config import RelayConfig, load_config
from chat_relay.types import SessionEvent, SessionEventType

console = Console()


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # Keep uvicorn's loggers on the same level as ours
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(level)


@click.group()
@click.version_option(__version__, prog_name="chat-relay")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to chat_relay.yaml (auto-detected from CWD or ~/.config/chat-relay/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Chat Relay - stream LLM answers to clients as server-sent events."""
    _configure_logging(verbose)
    ctx.obj = load_config(config_path)


@main.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", "-p", type=int, default=None, help="Port (default from config)")
@click.pass_obj
def serve(config: RelayConfig, host: str | None, port: int | None) -> None:
    """Run the relay server."""
    import uvicorn

    from chat_relay.server.app import create_app

    host = host or config.server.host
    port = port or config.server.port
    console.print(
        f"[bold cyan]chat-relay[/bold cyan] v{__version__} on http://{host}:{port}"
        f"  [dim](env={config.server.environment}, provider={config.provider})[/dim]"
    )
    uvicorn.run(create_app(config), host=host, port=port, log_config=None)


@main.command()
@click.option("--url", default=None, help="Relay chat endpoint (default from config)")
@click.option("--provider", default=None, help="Provider to request (default: server default)")
@click.option("--user", "user_id", default=None, help="X-Internal-User-Id header")
@click.option("--tenant", "tenant_id", default=None, help="X-Tenant-Id header")
@click.pass_obj
def chat(
    config: RelayConfig,
    url: str | None,
    provider: str | None,
    user_id: str | None,
    tenant_id: str | None,
) -> None:
    """Chat with a running relay from the terminal."""
    headers = {}
    if user_id:
        headers["X-Internal-User-Id"] = user_id
    if tenant_id:
        headers["X-Tenant-Id"] = tenant_id
    payload = {"provider": provider} if provider else None
    asyncio.run(_chat_loop(
        url or config.client.api_url,
        config.client.max_retries,
        config.client.timeout,
        headers,
        payload,
    ))


async def _chat_loop(
    url: str,
    max_retries: int,
    timeout: float,
    headers: dict[str, str],
    payload: dict[str, str] | None,
) -> None:
    session = ChatSession(url, max_retries=max_retries, headers=headers, timeout=timeout)
    session.events.subscribe(SessionEventType.STREAM_CONTENT, _print_fragment)
    session.events.subscribe(SessionEventType.STREAM_DONE, lambda _e: console.print())
    session.events.subscribe(SessionEventType.STREAM_ERROR, _print_error)

    console.print("[dim]Commands: /retry  /clear  /quit[/dim]")
    async with session:
        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold green]you>[/bold green] ")
            except (EOFError, KeyboardInterrupt):
                break
            command = line.strip()
            if not command:
                continue
            if command in ("/quit", "/exit"):
                break
            if command == "/clear":
                session.clear()
                console.print("[dim]Conversation cleared[/dim]")
                continue
            if command == "/retry":
                await _retry(session)
                continue
            console.print("[bold blue]assistant>[/bold blue] ", end="")
            await session.send_message(line, payload)


async def _retry(session: ChatSession) -> bool:
    if not any(m.role == "user" for m in session.messages):
        console.print("[dim]Nothing to retry[/dim]")
        return False
    console.print("[bold blue]assistant>[/bold blue] ", end="")
    try:
        retried = await session.retry()
    except RetryExhaustedError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        return False
    if not retried:
        console.print("[dim]Nothing to retry[/dim]")
    return retried


def _print_fragment(event: SessionEvent) -> None:
    console.print(event.data["text"], end="", markup=False, highlight=False)


def _print_error(event: SessionEvent) -> None:
    message = escape(str(event.data["error"]))
    console.print(f"\n[red]Error: {message}[/red] [dim](/retry to try again)[/dim]")


if __name__ == "__main__":
    main()
