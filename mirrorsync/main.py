#!/usr/bin/env python3
"""
Main entry point for mirrorsync.
"""
from .cli.sync_cli import cli


def main():
    cli(prog_name="mirrorsync")


if __name__ == "__main__":
    main()
