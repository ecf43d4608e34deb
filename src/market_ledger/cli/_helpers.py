"""Shared helpers for market ledger CLI commands.

Centralise logging setup, settings loading with command-line overrides,
and the error reporting used by every command.
"""

import logging
from dataclasses import replace
from typing import NoReturn

import typer

from market_ledger.core.config import ConfigError, EngineSettings, get_config
from market_ledger.core.errors import LedgerError


def configure_logging(*, verbose: bool) -> None:
    """Configure root logging once for a CLI invocation."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_settings(db_url: str | None = None) -> EngineSettings:
    """Load engine settings, applying a ``--db-url`` override when given.

    Raises:
        typer.Exit: With code 1 when the configuration is invalid.

    """
    try:
        settings = EngineSettings.from_loader(get_config())
    except ConfigError as exc:
        typer.echo(f"Configuration error: {exc}", err=True)
        raise typer.Exit(code=1) from exc
    if db_url:
        settings = replace(settings, db_url=db_url)
    return settings


def fail(exc: LedgerError) -> NoReturn:
    """Print a classified error as ``[kind] message`` and exit with code 1."""
    typer.echo(f"[{exc.kind.value}] {exc.msg}", err=True)
    raise typer.Exit(code=1) from exc
