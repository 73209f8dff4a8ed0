"""Content validators per configuration domain.

Validators are pure: they read nothing but their arguments and, where a
domain needs it, read-only views of the running system (the kernel
parameter namespace, external boot-parameter stores). They never write, so
calling them repeatedly is always safe.

``validate(domain, path, content)`` dispatches structurally on the domain to
one validator variant and returns ``ValidationResult``; callers that prefer
exceptions use ``ValidationResult.raise_for_error``.
"""

from __future__ import annotations

import fnmatch
import re
import shlex
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Protocol

from confguard.core.constants import GRUB_CMDLINE_KEYS, MODPROBE_KEYWORDS, ROOT_DEVICE_PARAMS
from confguard.core.errors import ValidationError


class ConfigDomain(str, Enum):
    """Configuration domains, each governed by one validator variant."""

    BOOTLOADER = "bootloader"
    KERNEL_PARAM_STORE = "kernel_param_store"
    MODULE_OPTIONS = "module_options"
    GENERIC = "generic"


@dataclass(frozen=True)
class ValidationResult:
    """Ok (``ok=True``) or Err with a reason."""

    domain: ConfigDomain
    ok: bool
    reason: str | None = None

    @classmethod
    def accept(cls, domain: ConfigDomain) -> "ValidationResult":
        return cls(domain=domain, ok=True)

    @classmethod
    def reject(cls, domain: ConfigDomain, reason: str) -> "ValidationResult":
        return cls(domain=domain, ok=False, reason=reason)

    def raise_for_error(self, path: str | Path) -> None:
        """Raise ``ValidationError`` if this result is an Err."""
        if not self.ok:
            raise ValidationError(self.domain.value, path, self.reason or "rejected")


class Validator(Protocol):
    """Interface shared by the validator variants."""

    domain: ConfigDomain

    def validate(self, path: Path, content: bytes) -> ValidationResult: ...


def _decode(domain: ConfigDomain, content: bytes) -> str | ValidationResult:
    if b"\x00" in content:
        return ValidationResult.reject(domain, "content contains NUL bytes")
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError as e:
        return ValidationResult.reject(domain, f"content is not valid UTF-8: {e.reason}")


def _logical_lines(text: str) -> list[tuple[int, str]]:
    """Join backslash continuations; returns ``(first_line_number, text)`` pairs."""
    joined: list[tuple[int, str]] = []
    buffer = ""
    start = 0
    for number, raw in enumerate(text.splitlines(), start=1):
        if not buffer:
            start = number
        if raw.endswith("\\"):
            buffer += raw[:-1] + " "
            continue
        joined.append((start, buffer + raw))
        buffer = ""
    if buffer:
        joined.append((start, buffer))
    return joined


# ============================================================================
# Bootloader
# ============================================================================

_ASSIGNMENT = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$")


def _quotes_balanced(value: str) -> bool:
    """Check shell quoting of one assignment value."""
    try:
        shlex.split(value, comments=False, posix=True)
    except ValueError:
        return False
    return True


_ROOT_PARAM = re.compile(
    r"(?<![\w.-])(?:" + "|".join(re.escape(p) for p in ROOT_DEVICE_PARAMS) + r")[^\s\"']"
)


def _has_root_param(text: str) -> bool:
    # grubenv stores "kernelopts=root=...", hence no word-boundary on '='
    return _ROOT_PARAM.search(text) is not None


@dataclass
class BootloaderValidator:
    """Validates ``/etc/default/grub``-style kernel command-line files.

    Content passes when every assignment is properly quoted, at least one
    recognised command-line variable is present, and a root-device parameter
    is present either in the content itself or, on systems that keep the
    command line outside this file, in one of ``external_stores``.

    Attributes:
        external_stores: Live paths of external boot-parameter stores
            (``/etc/kernel/cmdline``, ``grubenv``); the first one that exists
            is authoritative for the root-device check
    """

    external_stores: list[Path] = field(default_factory=list)
    domain: ConfigDomain = ConfigDomain.BOOTLOADER

    def validate(self, path: Path, content: bytes) -> ValidationResult:
        text = _decode(self.domain, content)
        if isinstance(text, ValidationResult):
            return text

        cmdline_values: list[str] = []
        for number, line in _logical_lines(text):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            match = _ASSIGNMENT.match(line)
            if match is None:
                if not _quotes_balanced(stripped):
                    return ValidationResult.reject(
                        self.domain, f"line {number}: unbalanced quoting"
                    )
                continue
            name, value = match.groups()
            if not _quotes_balanced(value):
                return ValidationResult.reject(
                    self.domain, f"line {number}: unbalanced quoting in {name}"
                )
            if name in GRUB_CMDLINE_KEYS:
                cmdline_values.append(value)

        # /etc/kernel/cmdline style: a bare command line, no assignments
        if not cmdline_values and path.name == "cmdline":
            cmdline_values = [text]

        if not cmdline_values:
            return ValidationResult.reject(
                self.domain,
                "no kernel command-line key found (expected one of "
                + ", ".join(GRUB_CMDLINE_KEYS)
                + ")",
            )

        if any(_has_root_param(value) for value in cmdline_values):
            return ValidationResult.accept(self.domain)

        store = self._external_store(exclude=path)
        if store is None:
            return ValidationResult.reject(self.domain, "no root-device parameter present")
        try:
            store_text = store.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            return ValidationResult.reject(
                self.domain, f"cannot read boot parameter store {store}: {e}"
            )
        if _has_root_param(store_text):
            return ValidationResult.accept(self.domain)
        return ValidationResult.reject(
            self.domain, f"no root-device parameter present (checked {store})"
        )

    def _external_store(self, exclude: Path) -> Path | None:
        for store in self.external_stores:
            if store != exclude and store.is_file():
                return store
        return None


# ============================================================================
# Kernel parameter store (sysctl)
# ============================================================================


@dataclass
class KernelParamValidator:
    """Dry-run load of sysctl content against the live parameter namespace.

    Every ``key = value`` line must name a parameter that exists below
    ``proc_sys_root`` (dots or slashes as separators, glob patterns allowed)
    and carry a value. Lines prefixed with ``-`` are allowed to name unknown
    parameters, as ``sysctl --system`` ignores errors for them.
    """

    proc_sys_root: Path = Path("/proc/sys")
    domain: ConfigDomain = ConfigDomain.KERNEL_PARAM_STORE

    def validate(self, path: Path, content: bytes) -> ValidationResult:
        text = _decode(self.domain, content)
        if isinstance(text, ValidationResult):
            return text

        errors: list[str] = []
        for number, line in enumerate(text.splitlines(), start=1):
            stripped = line.strip()
            if not stripped or stripped[0] in "#;":
                continue
            key, sep, value = stripped.partition("=")
            key = key.strip()
            ignore_errors = key.startswith("-")
            key = key.lstrip("-")
            if not sep or not key:
                errors.append(f"line {number}: expected 'key = value'")
                continue
            if not value.strip():
                errors.append(f"line {number}: empty value for {key}")
                continue
            if not ignore_errors and not self._exists(key):
                errors.append(f"line {number}: unknown parameter {key}")

        if errors:
            return ValidationResult.reject(self.domain, "; ".join(errors))
        return ValidationResult.accept(self.domain)

    def _exists(self, key: str) -> bool:
        relative = key.replace(".", "/") if "/" not in key else key
        candidate = self.proc_sys_root / relative
        if not any(ch in relative for ch in "*?["):
            return candidate.exists()
        parent = self.proc_sys_root
        parts = PurePosixPath(relative).parts
        return _glob_exists(parent, parts)


def _glob_exists(base: Path, parts: tuple[str, ...]) -> bool:
    if not parts:
        return True
    head, rest = parts[0], parts[1:]
    if not base.is_dir():
        return False
    for child in base.iterdir():
        if fnmatch.fnmatchcase(child.name, head) and _glob_exists(child, rest):
            return True
    return False


# ============================================================================
# Module options (modprobe.d)
# ============================================================================


@dataclass
class ModuleOptionsValidator:
    """Heuristic syntax scan of modprobe.d content.

    Each non-comment line must start with a recognised keyword and carry the
    arguments that keyword needs; at least one directive must be present.
    """

    domain: ConfigDomain = ConfigDomain.MODULE_OPTIONS

    _MIN_ARGS = {
        "alias": 2,
        "blacklist": 1,
        "install": 2,
        "options": 2,
        "remove": 2,
        "softdep": 2,
        "weakdep": 2,
    }

    def validate(self, path: Path, content: bytes) -> ValidationResult:
        text = _decode(self.domain, content)
        if isinstance(text, ValidationResult):
            return text

        directives = 0
        for number, line in _logical_lines(text):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            words = stripped.split()
            keyword = words[0]
            if keyword not in MODPROBE_KEYWORDS:
                return ValidationResult.reject(
                    self.domain, f"line {number}: unrecognised directive {keyword!r}"
                )
            if len(words) - 1 < self._MIN_ARGS[keyword]:
                return ValidationResult.reject(
                    self.domain, f"line {number}: {keyword} needs more arguments"
                )
            options = words[2:] if keyword == "options" else []
            if not all("=" in word or word.isidentifier() for word in options):
                return ValidationResult.reject(
                    self.domain, f"line {number}: malformed option in {stripped!r}"
                )
            directives += 1

        if directives == 0:
            return ValidationResult.reject(self.domain, "no modprobe directives found")
        return ValidationResult.accept(self.domain)


# ============================================================================
# Generic
# ============================================================================


@dataclass
class GenericValidator:
    """Accepts any non-empty content without NUL bytes."""

    domain: ConfigDomain = ConfigDomain.GENERIC

    def validate(self, path: Path, content: bytes) -> ValidationResult:
        if not content:
            return ValidationResult.reject(self.domain, "content is empty")
        if b"\x00" in content:
            return ValidationResult.reject(self.domain, "content contains NUL bytes")
        return ValidationResult.accept(self.domain)


# ============================================================================
# Dispatch
# ============================================================================


@dataclass
class ValidatorSet:
    """One configured instance of every validator variant."""

    bootloader: BootloaderValidator = field(default_factory=BootloaderValidator)
    kernel_params: KernelParamValidator = field(default_factory=KernelParamValidator)
    module_options: ModuleOptionsValidator = field(default_factory=ModuleOptionsValidator)
    generic: GenericValidator = field(default_factory=GenericValidator)

    def for_domain(self, domain: ConfigDomain) -> Validator:
        match domain:
            case ConfigDomain.BOOTLOADER:
                return self.bootloader
            case ConfigDomain.KERNEL_PARAM_STORE:
                return self.kernel_params
            case ConfigDomain.MODULE_OPTIONS:
                return self.module_options
            case ConfigDomain.GENERIC:
                return self.generic
        raise ValueError(f"unknown configuration domain: {domain!r}")

    def validate(self, domain: ConfigDomain, path: Path, content: bytes) -> ValidationResult:
        return self.for_domain(domain).validate(path, content)


_DEFAULT_VALIDATORS = ValidatorSet()


def validate(
    domain: ConfigDomain,
    path: str | Path,
    content: bytes,
    validators: ValidatorSet | None = None,
) -> ValidationResult:
    """Validate ``content`` destined for ``path`` under ``domain``."""
    return (validators or _DEFAULT_VALIDATORS).validate(ConfigDomain(domain), Path(path), content)


def domain_for_path(target: str | Path) -> ConfigDomain:
    """Infer the configuration domain from a logical target path."""
    path = PurePosixPath(str(target))
    if str(path) in ("/etc/default/grub", "/etc/kernel/cmdline"):
        return ConfigDomain.BOOTLOADER
    if str(path) == "/etc/sysctl.conf" or (
        path.parent.name == "sysctl.d" and path.suffix == ".conf"
    ):
        return ConfigDomain.KERNEL_PARAM_STORE
    if path.parent.name == "modprobe.d" and path.suffix == ".conf":
        return ConfigDomain.MODULE_OPTIONS
    return ConfigDomain.GENERIC
