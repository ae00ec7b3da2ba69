# Copyright © 2026 Apple Inc.

__version__ = "0.1.0"
