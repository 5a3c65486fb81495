"""Command line interface for the envsense package."""
from __future__ import annotations

import json
import logging

import typer

from .demo import run_demo
from .derived import altitude as compute_altitude
from .derived import c_to_f, dew_point, m_to_ft
from .errors import DomainError

app = typer.Typer(context_settings={"help_option_names": ["-h", "--help"]})


@app.command()
def demo(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Run every driver once against a simulated bus seeded with datasheet examples."""

    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)
    for result in run_demo():
        for message in result.outputs():
            typer.echo(json.dumps(message, ensure_ascii=False))


@app.command()
def dewpoint(
    temperature: float = typer.Argument(..., help="Air temperature in degrees Celsius."),
    humidity: float = typer.Argument(..., help="Relative humidity in percent."),
) -> None:
    """Compute the dew point."""

    try:
        value = dew_point(temperature, humidity)
    except DomainError as exc:
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(f"Dew point: {value:.2f} ℃ ({c_to_f(value):.2f} ℉)")


@app.command()
def altitude(
    pressure: float = typer.Argument(..., help="Barometric pressure in Pa."),
) -> None:
    """Compute the barometric altitude relative to standard sea-level pressure."""

    try:
        value = compute_altitude(pressure)
    except DomainError as exc:
        raise typer.BadParameter(str(exc)) from exc
    typer.echo(f"Altitude: {value:.1f} m ({m_to_ft(value):.1f} ft)")


def run() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    run()
