"""Command-line entry point for the mity package."""

from mity.cli import main as _workflow_main


def main() -> None:
    """Execute the mity command-line interface."""

    _workflow_main()


if __name__ == "__main__":  # pragma: no cover - entry point
    main()
