# Copyright © 2026 Apple Inc.

from .cli import main

if __name__ == "__main__":
    main()
