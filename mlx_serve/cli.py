# Copyright © 2026 Apple Inc.

import importlib
import sys

subcommands = {
    "serve": "server",
    "store": "manage",
}


def main():
    if len(sys.argv) < 2 or sys.argv[1] not in subcommands:
        names = ", ".join(subcommands)
        raise SystemExit(f"Usage: mlx-serve <command> [args]. Commands: {names}")
    subcommand = sys.argv.pop(1)
    module = importlib.import_module(f"mlx_serve.{subcommands[subcommand]}")
    sys.argv[0] = f"mlx-serve {subcommand}"
    result = module.main()
    if isinstance(result, int):
        sys.exit(result)
