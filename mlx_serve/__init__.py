# Copyright © 2026 Apple Inc.

from ._version import __version__
