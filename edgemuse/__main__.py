#!/usr/bin/env python3
"""EdgeMuse entry point.

- No arguments -> interactive chat
- With arguments -> the matching subcommand
"""

import sys


def main():
    """Main entry point."""
    if len(sys.argv) == 1:
        sys.argv.append("chat")
    from .cli import main as cli_main
    cli_main()


if __name__ == "__main__":
    main()
