"""Click CLI entry point: builds the orchestrator from settings and runs one request."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.logging import RichHandler
from rich.markup import escape

from config.config_loader import AppConfig, load_config
from llm_dispatch.errors import AIServiceError, CapabilityMismatchError
from llm_dispatch.healthcheck import run_health_checks
from llm_dispatch.models import ServiceKind, ServiceRequest, StreamExtraction
from llm_dispatch.orchestrator import ServiceOrchestrator
from llm_dispatch.output import StreamProgressDisplay, console, print_health, print_result
from llm_dispatch.providers.anthropic import AnthropicProvider
from llm_dispatch.providers.base import AIProvider, StreamHandle
from llm_dispatch.providers.gemini import GeminiProvider
from llm_dispatch.providers.openai_provider import OpenAIProvider
from llm_dispatch.roles import Role
from llm_dispatch.stream_parser import items_at_path, process_text_stream

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "google": GeminiProvider,
}

_KIND_CHOICES = {
    "text": ServiceKind.TEXT,
    "object": ServiceKind.OBJECT,
    "stream-text": ServiceKind.STREAM_TEXT,
    "stream-object": ServiceKind.STREAM_OBJECT,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Instantiate one adapter per configured backend id."""
    providers: dict[str, AIProvider] = {}
    for name, provider_cfg in config.providers.items():
        provider_cls = PROVIDER_CLASSES.get(provider_cfg.sdk)
        if provider_cls is None:
            logger.warning("Provider '%s' uses unknown sdk '%s', skipping", name, provider_cfg.sdk)
            continue
        providers[name] = provider_cls(name)
    return providers


def _build_request(
    prompt: str,
    role: str,
    kind: ServiceKind,
    system_prompt: str,
    schema_file: str | None,
    item_path: str,
    expected: int,
) -> ServiceRequest:
    structure = None
    if schema_file:
        structure = json.loads(Path(schema_file).read_text(encoding="utf-8"))
    extraction = None
    if kind is ServiceKind.STREAM_OBJECT:
        extraction = StreamExtraction(
            item_path=item_path,
            expected_total=expected,
            full_item_extractor=lambda document: items_at_path(document, item_path),
        )
    return ServiceRequest(
        role=role,
        prompt=prompt,
        system_prompt=system_prompt,
        command_label="ask",
        structure=structure,
        extraction=extraction,
    )


async def _run_ask(orchestrator: ServiceOrchestrator, kind: ServiceKind, request: ServiceRequest) -> None:
    if request.extraction is not None:
        with StreamProgressDisplay(request.extraction.expected_total) as display:
            request.extraction.on_progress = display.on_progress
            result = await orchestrator.run(kind, request)
    else:
        result = await orchestrator.run(kind, request)

    if isinstance(result.payload, StreamHandle):
        console.print(f"[dim]{result.role}: {result.backend_id} ({result.model_id})[/dim]")
        await process_text_stream(
            result.payload, lambda chunk: console.print(chunk, end="", markup=False, highlight=False)
        )
        console.print()
        return
    print_result(result)


@click.group()
@click.option("--settings", "settings_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Path to settings.yaml (default: bundled config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.pass_context
def main(ctx: click.Context, settings_path: str | None, verbose: bool) -> None:
    """llm-dispatch -- role-based AI completions with retries and failover."""
    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config(Path(settings_path)) if settings_path else load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        sys.exit(1)

    ctx.obj = ServiceOrchestrator(config, _build_providers(config))


@main.command()
@click.argument("prompt", required=False)
@click.option("--file", "prompt_file", type=click.Path(exists=True), help="Read the prompt from a file")
@click.option("--role", default=Role.MAIN.value, type=click.Choice([r.value for r in Role]),
              help="Role to start the fallback sequence from")
@click.option("--kind", "kind_name", default="text", type=click.Choice(list(_KIND_CHOICES)),
              help="Response kind")
@click.option("--system", "system_prompt", default="", help="System prompt")
@click.option("--schema", "schema_file", type=click.Path(exists=True), default=None,
              help="JSON schema file describing the object to produce")
@click.option("--item-path", default="$.tasks.*", show_default=True,
              help="Array of items to extract while streaming an object")
@click.option("--expected", default=0, type=int, help="Expected number of streamed items")
@click.pass_obj
def ask(
    orchestrator: ServiceOrchestrator,
    prompt: str | None,
    prompt_file: str | None,
    role: str,
    kind_name: str,
    system_prompt: str,
    schema_file: str | None,
    item_path: str,
    expected: int,
) -> None:
    """Send PROMPT through the role sequence and print the result.

    \b
    Examples:
      llm-dispatch ask "Summarize the tradeoffs of REST vs GraphQL"
      llm-dispatch ask --role research --kind stream-text "Latest asyncio changes?"
      llm-dispatch ask --kind stream-object --schema tasks.json --expected 5 --file prd.md
    """
    if prompt_file:
        prompt = Path(prompt_file).read_text(encoding="utf-8").strip()
    if not prompt:
        console.print("[bold red]Error:[/bold red] Provide a PROMPT argument or --file.")
        sys.exit(1)

    kind = _KIND_CHOICES[kind_name]
    if kind.produces_object and not schema_file:
        console.print(f"[bold red]Error:[/bold red] --schema is required for --kind {kind_name}.")
        sys.exit(1)

    request = _build_request(prompt, role, kind, system_prompt, schema_file, item_path, expected)
    try:
        asyncio.run(_run_ask(orchestrator, kind, request))
    except CapabilityMismatchError as exc:
        console.print(f"[bold red]Unsupported model:[/bold red] {escape(str(exc))}")
        sys.exit(2)
    except AIServiceError as exc:
        console.print(f"[bold red]Error:[/bold red] {escape(str(exc))}")
        sys.exit(1)


@main.command()
@click.pass_obj
def check(orchestrator: ServiceOrchestrator) -> None:
    """Ping the backend configured for every role."""
    console.print("\n[bold]Checking roles...[/bold]")
    results = asyncio.run(run_health_checks(orchestrator))
    failed = print_health(results)
    if failed:
        console.print(f"\n[yellow]{len(failed)} role(s) failed:[/yellow] {', '.join(failed)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
