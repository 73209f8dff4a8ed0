"""Content transforms for files edited in place.

Producers hand ``AtomicFileTransaction.apply`` a callable ``bytes -> bytes``;
the helpers here build the common ones for the bootloader defaults file.
"""

import re
from collections.abc import Callable, Iterable

from confguard.core.constants import GRUB_CMDLINE_KEYS

Transform = Callable[[bytes], bytes]


def _param_key(param: str) -> str:
    return param.split("=", 1)[0]


def add_kernel_params(content: bytes, params: Iterable[str]) -> bytes:
    """Append kernel parameters to the grub command-line variable.

    ``GRUB_CMDLINE_LINUX_DEFAULT`` is edited when present, otherwise
    ``GRUB_CMDLINE_LINUX``. A parameter is skipped when a parameter with the
    same key is already on the line. Content without either variable is
    returned unchanged.
    """
    text = content.decode("utf-8")
    for key in GRUB_CMDLINE_KEYS:
        pattern = re.compile(rf'^({key}=)(["\']?)(.*?)\2[ \t]*$', re.MULTILINE)
        match = pattern.search(text)
        if match is None:
            continue
        prefix, quote, current = match.groups()
        present = {_param_key(p) for p in current.split()}
        additions = [p for p in params if _param_key(p) not in present]
        if not additions:
            return content
        updated = " ".join([*current.split(), *additions])
        quote = quote or '"'
        replacement = f"{prefix}{quote}{updated}{quote}"
        text = text[: match.start()] + replacement + text[match.end() :]
        return text.encode("utf-8")
    return content


def kernel_params_transform(params: Iterable[str]) -> Transform:
    """Build a transform appending ``params`` via ``add_kernel_params``."""
    wanted = list(params)
    return lambda content: add_kernel_params(content, wanted)


def replace_content(new_content: bytes) -> Transform:
    """Transform that ignores the current bytes and writes ``new_content``."""
    return lambda _content: new_content
