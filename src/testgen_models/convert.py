"""Standalone precision converter, run in its own interpreter by SubprocessConverter."""

from __future__ import annotations

from pathlib import Path

import click

from .models import PrecisionLevel
from .precision import NumpyConverter


@click.command()
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("target", type=click.Path(dir_okay=False, path_type=Path))
@click.argument("precision", type=click.Choice([p.value for p in PrecisionLevel], case_sensitive=False))
@click.option("--chunk-elements", type=int, default=1 << 20, show_default=True)
def main(source: Path, target: Path, precision: str, chunk_elements: int) -> None:
    """Convert SOURCE weights to PRECISION and write TARGET."""
    try:
        NumpyConverter(chunk_elements).convert(source, target, PrecisionLevel.parse(precision))
    except (OSError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


if __name__ == "__main__":
    main()
