"""CLI entry point."""

from __future__ import annotations

import functools
from collections.abc import Callable
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .exceptions import ModelError, ModelNotConfiguredError
from .models import ModelDescriptor, PrecisionLevel
from .service import ModelService

console = Console()


def _service(ctx: click.Context) -> ModelService:
    if ctx.obj is None:
        ctx.obj = ModelService()
        ctx.call_on_close(ctx.obj.close)
    return ctx.obj


def _descriptor(service: ModelService, key: str) -> ModelDescriptor:
    descriptor = service.catalog.by_key(key)
    if descriptor is None:
        raise ModelNotConfiguredError(key)
    return descriptor


def _reports_model_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except ModelError as exc:
            console.print(f"[red]{type(exc).__name__}: {escape(str(exc))}[/red]")
            raise SystemExit(1) from exc
    return wrapper


def _mb(size: int) -> str:
    return f"{size / (1024 * 1024):,.1f}"


@click.group()
def main() -> None:
    """Model lifecycle tools — acquire, verify, reduce and run local models."""


@main.command()
@click.pass_context
def list_models(ctx: click.Context) -> None:
    """List all models in the catalog."""
    service = _service(ctx)

    table = Table(title="Model Catalog")
    table.add_column("Key", style="cyan")
    table.add_column("Role")
    table.add_column("Weights")
    table.add_column("Source")

    for m in service.catalog.models:
        table.add_row(m.key, m.role.value, m.weights_file, m.source_url)
    console.print(table)


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show registry status and on-disk artifacts for every model."""
    service = _service(ctx)
    min_bytes = service.settings.acquisition.min_weights_bytes

    table = Table(title="Model Status")
    table.add_column("Key", style="cyan")
    table.add_column("Status")
    table.add_column("Artifacts")
    table.add_column("Variants")
    table.add_column("Error", style="red")

    for key, info in service.registry.snapshot().items():
        descriptor = service.catalog.by_key(key)
        if descriptor is None:
            artifacts, variants = "-", "-"
        else:
            artifacts = "present" if service.store.is_complete(descriptor, min_bytes) else "missing"
            variants = ", ".join(level.value for level in service.store.list_variants(descriptor)) or "-"
        table.add_row(key, info.status.value, artifacts, variants, info.error or "")
    console.print(table)


@main.command()
@click.argument("key")
@click.pass_context
@_reports_model_errors
def acquire(ctx: click.Context, key: str) -> None:
    """Download any missing files for KEY."""
    service = _service(ctx)
    descriptor = _descriptor(service, key)
    service.acquisition.acquire(descriptor)
    console.print(f"[green]{key} is present at {service.store.model_dir(descriptor)}[/green]")


@main.command()
@click.argument("key")
@click.pass_context
@_reports_model_errors
def verify(ctx: click.Context, key: str) -> None:
    """Run the integrity checks on the local files of KEY."""
    service = _service(ctx)
    service.acquisition.verify(_descriptor(service, key))
    console.print(f"[green]{key} passed integrity checks[/green]")


@main.command()
@click.argument("key")
@click.option(
    "--precision",
    type=click.Choice([p.value for p in PrecisionLevel], case_sensitive=False),
    default=None,
    help="Target level; defaults to the configured precision level.",
)
@click.pass_context
@_reports_model_errors
def reduce(ctx: click.Context, key: str, precision: str | None) -> None:
    """Create (or reuse) a reduced-precision variant of KEY."""
    service = _service(ctx)
    level = PrecisionLevel.parse(precision) if precision else service.settings.precision.level
    variant = service.reducer.reduce(key, level)
    console.print(
        f"[green]{key} {variant.precision.value}[/green] {variant.path} "
        f"({_mb(variant.size_bytes)} MB, {variant.reduction_ratio:.1f}x smaller)"
    )


@main.command()
@click.pass_context
def levels(ctx: click.Context) -> None:
    """List the supported precision levels."""
    service = _service(ctx)

    table = Table(title="Precision Levels")
    table.add_column("Level", style="cyan")
    table.add_column("Bits", justify="right")
    table.add_column("Description")

    for name, description in service.reducer.available_levels().items():
        table.add_row(name, str(PrecisionLevel(name).bits), description)
    console.print(table)


@main.command()
@click.argument("key")
@click.pass_context
@_reports_model_errors
def savings(ctx: click.Context, key: str) -> None:
    """Estimate the disk saved by each precision level for KEY."""
    service = _service(ctx)
    estimate = service.reducer.estimate_savings(key)

    table = Table(title=f"Estimated Savings: {key}")
    table.add_column("Level", style="cyan")
    table.add_column("Saved (MB)", justify="right")

    for name, saved in estimate.items():
        table.add_row(name, _mb(saved))
    console.print(table)


@main.command()
@click.argument("prompt")
@click.option("--key", default=None, help="Model key; defaults to the configured language model.")
@click.option("--max-tokens", type=int, default=200, show_default=True)
@click.pass_context
@_reports_model_errors
def generate(ctx: click.Context, prompt: str, key: str | None, max_tokens: int) -> None:
    """Generate text for PROMPT with a local model."""
    service = _service(ctx)
    text = service.facade.generate_text(prompt, max_tokens, key=key)
    console.print(text, markup=False, highlight=False)


if __name__ == "__main__":
    main()
