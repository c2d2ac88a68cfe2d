"""
Module entry point for: python -m examparser

Allows running the extractor directly as a module:
    python -m examparser extract <pdf_path> [options]
    python -m examparser info <pdf_path>
    python -m examparser cleanup [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
