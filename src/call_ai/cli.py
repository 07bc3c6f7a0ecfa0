"""Command-line interface for call-ai."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import httpx
import yaml
from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from call_ai import __version__
from call_ai.config import CallAIConfig, load_config
from call_ai.errors import CallAIError
from call_ai.llm.client import AsyncCallAIClient
from call_ai.metadata import get_meta
from call_ai.types import CallOptions, ResponseMeta, Schema

console = Console()


def load_schema(path: str) -> Schema:
    """Read a schema from a ``.json`` or ``.yaml`` file."""
    schema_path = Path(path)
    with open(schema_path) as f:
        if schema_path.suffix.lower() in (".yaml", ".yml"):
            raw = yaml.safe_load(f)
        else:
            raw = json.load(f)
    if not isinstance(raw, dict):
        raise click.BadParameter(f"Schema file must contain an object: {path}")
    return Schema.from_dict(raw)


def meta_table(meta: ResponseMeta) -> Table:
    table = Table(title="Response metadata", show_lines=False, border_style="dim")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("model", meta.model)
    table.add_row("endpoint", meta.endpoint or "")
    if meta.timing.duration is not None:
        table.add_row("duration", f"{meta.timing.duration:.0f} ms")
    return table


async def _run(
    config: CallAIConfig,
    messages: list[dict[str, Any]],
    options: CallOptions,
) -> tuple[str, ResponseMeta | None]:
    async with AsyncCallAIClient(config=config) as client:
        if not options.stream:
            text = await client.call(messages, options)
            return text, get_meta(text)

        stream = await client.stream(messages, options)
        async with stream:
            if console.is_terminal:
                with Live(console=console, refresh_per_second=8, transient=True) as live:
                    async for partial in stream:
                        live.update(Text(partial))
            else:
                await stream.collect()
        return stream.final_text or "", get_meta(stream)


@click.command()
@click.argument("prompt")
@click.option("--model", "-m", default=None, help="Model id, e.g. openai/gpt-4o")
@click.option("--schema", "-s", "schema_path", default=None,
              type=click.Path(exists=True, dir_okay=False),
              help="JSON or YAML file with the output schema")
@click.option("--system", default=None, help="System message prepended to the prompt")
@click.option("--stream/--no-stream", default=True, help="Stream partial results")
@click.option("--temperature", type=float, default=None)
@click.option("--max-tokens", type=int, default=None)
@click.option("--meta", "show_meta", is_flag=True, help="Print response metadata")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to call_ai.yaml (auto-detected from CWD or ~/.config/call-ai/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="call-ai")
def main(prompt: str, model: str | None, schema_path: str | None, system: str | None,
         stream: bool, temperature: float | None, max_tokens: int | None,
         show_meta: bool, config_path: str | None, verbose: bool):
    """Send PROMPT to a chat model and print the answer."""
    try:
        config, config_file = load_config(config_path)
    except FileNotFoundError as e:
        console.print(Text(str(e), style="red"))
        sys.exit(1)

    if verbose or config.debug:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    if config_file:
        logging.getLogger(__name__).debug("Config: %s", config_file)

    messages: list[dict[str, Any]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    options = CallOptions(
        model=model,
        schema=load_schema(schema_path) if schema_path else None,
        stream=stream,
        temperature=temperature,
        max_tokens=max_tokens,
    )

    try:
        text, meta = asyncio.run(_run(config, messages, options))
    except (CallAIError, httpx.HTTPError, ValueError) as e:
        console.print(Text(f"Error: {e}", style="red"))
        sys.exit(1)

    console.print(Text(text))
    if show_meta and meta is not None:
        console.print(meta_table(meta))


if __name__ == "__main__":
    main()
