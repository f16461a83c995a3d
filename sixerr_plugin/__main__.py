#!/usr/bin/env python3
"""Sixerr - entry point.

- start   → Connect to the broker and serve requests
- version → Print the installed version
"""

import sys


def main():
    """Main entry point."""
    args = sys.argv[1:]

    if args and args[0] in ("version", "--version"):
        from . import get_version
        print(get_version())
        sys.exit(0)

    from .cli import main as cli_main
    cli_main()


if __name__ == "__main__":
    main()
