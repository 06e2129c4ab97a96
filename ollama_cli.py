"""Command-line front end for the resilient Ollama client."""

from __future__ import annotations

import argparse
import os
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table

from ollastream.cancellation import CancellationToken
from ollastream.client import OllamaClient
from ollastream.config import AppConfig
from ollastream.console import console
from ollastream.errors import OllamaClientError, OllamaModelNotFoundError, format_error
from ollastream.logging import configure_logging, get_logger
from ollastream.models import InstallationState, PullProgress
from ollastream.prompts import CodeAction, build_code_prompt, language_from_path
from ollastream.registry import RECOMMENDED_MODELS
from ollastream.streaming import ChunkKind

LOGGER = get_logger(__name__)


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Talk to a local Ollama server with retries and streaming.")
    parser.add_argument(
        "--config-file",
        type=Path,
        help="Path to a config file (YAML or JSON, default: config.yaml in project root).",
    )
    parser.add_argument("--env-file", type=Path, help="Path to a .env file (default: .env).")
    parser.add_argument("--host", help="Ollama HTTP host (default: OLLAMA_HOST env or the config file).")
    parser.add_argument("--model", help="Model to use (default: OLLAMA_MODEL env or the config file).")
    parser.add_argument("--timeout", type=float, help="Request timeout in seconds for generation.")
    parser.add_argument("--max-tokens", type=int, help="Maximum number of tokens to generate.")
    parser.add_argument("--temperature", type=float, help="Sampling temperature (0.0 - 2.0).")
    parser.add_argument("--no-stream", action="store_true", help="Wait for the full answer instead of streaming.")
    parser.add_argument("--log-level", default="WARNING", help="Python logging level (default: WARNING).")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("status", help="Show whether Ollama is installed, running and has the model.")
    commands.add_parser("models", help="List installed models.")
    commands.add_parser("start", help="Start the Ollama server in the background.")
    pull = commands.add_parser("pull", help="Download a model.")
    pull.add_argument("name", help="Model name, e.g. llama3:8b.")
    ask = commands.add_parser("ask", help="Send a prompt and print the answer.")
    ask.add_argument("prompt", help="Prompt text.")
    for action in (CodeAction.EXPLAIN, CodeAction.IMPROVE, CodeAction.DOCUMENT):
        code = commands.add_parser(action.value, help=f"{action.value.title()} the code in a file.")
        code.add_argument("file", type=Path, help="Source file to send to the model.")
    return parser.parse_args(argv)


def apply_overrides(config: AppConfig, args: argparse.Namespace) -> None:
    if args.host:
        config.ollama.host = args.host
    if args.model:
        config.ollama.default_model = args.model
    if args.timeout:
        config.ollama.request_timeout = args.timeout
    if args.max_tokens:
        config.ollama.max_response_tokens = args.max_tokens
    if args.temperature is not None:
        config.ollama.temperature = args.temperature
    config.validate()


@contextmanager
def cancel_on_interrupt() -> Iterator[CancellationToken]:
    """Turn Ctrl-C into a cancellation of the running operation."""

    token = CancellationToken()
    previous = signal.getsignal(signal.SIGINT)

    def handler(signum, frame) -> None:
        if token.cancelled:
            signal.signal(signal.SIGINT, previous)
            raise KeyboardInterrupt
        console.print("\n[warning]Cancelling... press Ctrl-C again to abort.[/warning]")
        token.cancel()

    signal.signal(signal.SIGINT, handler)
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)


def show_status(client: OllamaClient) -> int:
    installed = client.check_installed()
    table = Table(title="Ollama Status", box=None, show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("Host", str(client.endpoint))
    table.add_row("Installation", client.installation_state.value)

    if client.installation_state is InstallationState.NOT_INSTALLED:
        console.print(table)
        instructions = client.install_instructions()
        console.print(
            Panel(
                f"{instructions.title}\n{instructions.url}",
                title="Ollama Not Installed",
                style="warning",
            )
        )
        return 1
    if not installed:
        console.print(table)
        console.print("[warning]Ollama is installed but not running. Try the 'start' command.[/warning]")
        return 1

    model = client.config.ollama.default_model
    try:
        report = client.probe(model)
    except OllamaClientError as exc:
        table.add_row("Health", f"[error]{format_error(exc)}[/error]")
        console.print(table)
        return 1
    table.add_row("Health", "[success]healthy[/success]")
    if model:
        table.add_row("Model", model if report.model_available else f"{model} [warning](not installed)[/warning]")
    console.print(table)
    return 0


def show_models(client: OllamaClient) -> int:
    models = client.list_models(force_refresh=True)
    if not models and client.last_error is not None:
        console.print(Panel(format_error(client.last_error), title="Failed to List Models", style="error"))
        return 1
    if not models:
        table = Table(title="No models installed - recommended models", box=None)
        table.add_column("Name", style="magenta")
        table.add_column("Description")
        for recommended in RECOMMENDED_MODELS:
            table.add_row(recommended.name, recommended.description)
        console.print(table)
        return 0

    table = Table(title="Installed Models", box=None, highlight=True)
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Name", style="magenta")
    table.add_column("Size", justify="right")
    table.add_column("Modified")
    for idx, model in enumerate(models, start=1):
        modified = model.modified_at.strftime("%Y-%m-%d %H:%M") if model.modified_at else "-"
        table.add_row(str(idx), model.name, f"{model.size_gb:.2f} GB", modified)
    console.print(table)
    return 0


def pull_with_progress(client: OllamaClient, name: str) -> bool:
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TextColumn("[muted]{task.fields[detail]}"),
        console=console,
    )
    with cancel_on_interrupt() as token, progress:
        task = progress.add_task(name, total=100, detail="")

        def on_progress(update: PullProgress) -> None:
            percent = update.percent
            if percent is not None:
                progress.update(task, completed=percent, detail=update.message)
            else:
                progress.update(task, detail=update.message)

        try:
            model = client.pull_model(name, on_progress=on_progress, cancel_token=token)
        except OllamaClientError as exc:
            progress.stop()
            console.print(Panel(format_error(exc), title="Download Failed", style="error"))
            return False
        if token.cancelled:
            progress.stop()
            console.print("[warning]Download cancelled.[/warning]")
            return False
        progress.update(task, completed=100, detail="done")

    label = model.name if model is not None else name
    console.print(f"[success]Model {label} is ready.[/success]")
    return True


def run_prompt(client: OllamaClient, prompt: str, stream: bool) -> int:
    """Send ``prompt`` and print the answer, offering to pull a missing model once."""

    for attempt in range(2):
        try:
            if stream:
                stream_to_console(client, prompt)
            else:
                with console.status("Thinking..."):
                    text = client.generate_completion(prompt)
                console.print(text, markup=False, highlight=False)
            return 0
        except OllamaModelNotFoundError as exc:
            console.print(Panel(str(exc), title="Model Not Found", style="error"))
            if attempt or not exc.model or not Confirm.ask(f"Pull {exc.model} now?", console=console):
                return 1
            if not pull_with_progress(client, exc.model):
                return 1
        except OllamaClientError as exc:
            if not stream:
                console.print(Panel(format_error(exc), title="Ollama Error", style="error"))
            return 1
    return 1


def stream_to_console(client: OllamaClient, prompt: str) -> None:
    status = console.status("Thinking...")
    with cancel_on_interrupt() as token:
        try:
            for chunk in client.complete(prompt, cancel_token=token):
                if chunk.kind is ChunkKind.PLACEHOLDER:
                    status.start()
                    continue
                status.stop()
                if chunk.kind is ChunkKind.CLEAR:
                    continue
                style = "notice" if chunk.kind is ChunkKind.NOTICE else None
                if chunk.kind is ChunkKind.ERROR:
                    style = "error"
                console.out(chunk.text, end="", style=style, highlight=False)
        finally:
            status.stop()
            console.out("")
        if token.cancelled:
            console.print("[warning]Cancelled.[/warning]")


def run_code_command(client: OllamaClient, action: CodeAction, path: Path, stream: bool) -> int:
    try:
        code = path.read_text(encoding="utf-8")
    except OSError as exc:
        LOGGER.error("Cannot read %s: %s", path, exc)
        return 1
    if not code.strip():
        console.print("[warning]The file is empty; nothing to send.[/warning]")
        return 1
    prompt = build_code_prompt(action, code, language_from_path(path), client.config.prompts)
    return run_prompt(client, prompt, stream)


def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    if args.env_file:
        os.environ["ENV_FILE"] = str(args.env_file)

    config = AppConfig.load(config_path=args.config_file)
    apply_overrides(config, args)
    client = OllamaClient(config)
    stream = not args.no_stream

    if args.command == "status":
        return show_status(client)
    if args.command == "models":
        return show_models(client)
    if args.command == "start":
        if client.start_server():
            console.print(f"[success]Ollama is running at {client.endpoint}.[/success]")
            return 0
        console.print(Panel("The server did not become ready in time.", title="Start Failed", style="error"))
        return 1
    if args.command == "pull":
        return 0 if pull_with_progress(client, args.name) else 1

    if not config.ollama.default_model:
        console.print("[error]No model selected. Use --model or set OLLAMA_MODEL.[/error]")
        return 1
    if args.command == "ask":
        return run_prompt(client, args.prompt, stream)
    return run_code_command(client, CodeAction(args.command), args.file, stream)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
