"""CLI entry point for the market ledger.

All command logic lives in the cli subpackage.
"""

from market_ledger.cli import app

__all__ = ["app", "main"]


def main() -> None:
    """Run the market ledger CLI application."""
    app()


if __name__ == "__main__":
    main()
