"""Debug utility for confguard.

Provides a single debug() function that can be toggled via the
CONFGUARD_DEBUG environment variable. Low-level filesystem modules use it
instead of the structured logger so they stay quiet unless asked.

Usage:
    from confguard.utils.debug import debug

    debug(f"Backed up {path} -> {backup}")

Environment:
    CONFGUARD_DEBUG: Set to '1', 'true', 'yes' (case-insensitive) to enable
                     debug output. Any other value or unset disables it.
"""

import os
import sys
from typing import Any

# Determine if debug mode is enabled at module import time
_DEBUG_ENABLED = os.environ.get("CONFGUARD_DEBUG", "").lower() in (
    "1",
    "true",
    "yes",
)


def debug(msg: Any) -> None:
    """Print debug message to stderr if CONFGUARD_DEBUG is enabled.

    Args:
        msg: Message to print. Will be converted to string.

    Note:
        The environment variable is read at import time; reload the module
        to pick up a change.
    """
    if _DEBUG_ENABLED:
        print(f"[DEBUG] {msg}", file=sys.stderr)
