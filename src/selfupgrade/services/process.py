"""Host-process helpers."""

import os
import sys


def current_process_location() -> str:
    """Directory holding the executable of the running tool.

    Frozen builds run from their own executable; a regular install runs from
    the console-script entry point on ``sys.argv[0]``.
    """
    if getattr(sys, "frozen", False):
        return os.path.dirname(os.path.realpath(sys.executable))

    entry_point = sys.argv[0] if sys.argv and sys.argv[0] else sys.executable
    return os.path.dirname(os.path.realpath(entry_point))
