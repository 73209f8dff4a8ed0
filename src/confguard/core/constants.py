"""Core constants for confguard.

This module defines constants used throughout the application:
- Default on-disk locations for runs, staging and sentinels
- File names that make up the on-disk layout
- Exit codes for CLI automation
- Keyword tables used by the content validators
"""

# ============================================================================
# Default Locations
# ============================================================================

#: Root directory holding one subdirectory per run
DEFAULT_BACKUP_ROOT = "/var/backup/confguard"

#: Directory holding sentinels, the session lock and the staging tree
DEFAULT_STATE_DIR = "/var/lib/confguard"

#: Default dwell time (seconds) before a boot counts as verified
DEFAULT_DWELL_SECONDS = 300

#: Where systemd units are installed
DEFAULT_UNIT_DIR = "/etc/systemd/system"

#: Files backed up before any mutation when no explicit list is given
DEFAULT_TOUCH_PATHS: tuple[str, ...] = (
    "/etc/sysctl.conf",
    "/etc/sysctl.d/",
    "/etc/modprobe.d/",
    "/etc/tuned/",
    "/etc/default/grub",
    "/etc/environment",
    "/etc/udev/rules.d/",
)

#: Stores that may hold the kernel command line outside /etc/default/grub
DEFAULT_BOOT_PARAM_STORES: tuple[str, ...] = (
    "/etc/kernel/cmdline",
    "/boot/grub2/grubenv",
)

#: Bootloader menu regenerator
DEFAULT_GRUB_MKCONFIG_CMD: tuple[str, ...] = (
    "grub2-mkconfig",
    "-o",
    "/boot/grub2/grub.cfg",
)

# ============================================================================
# On-disk Layout
# ============================================================================

MANIFEST_NAME = "manifest.txt"
METADATA_NAME = "metadata.json"
RUN_FILES_DIR = "files"
RUN_CLOSED_MARKER = "closed"

#: Backup path recorded for a target that did not exist before the run
ABSENT_BACKUP = "-"

PENDING_MARKER = "boot-pending"
VERIFIED_MARKER = "boot-verified"
COMMIT_REQUEST_MARKER = "commit-requested"
ACTIVE_RUN_MARKER = "active-run"
CRITICAL_MARKER = "critical-operation.json"
STAGED_INDEX = "staged.json"
LOCK_NAME = "session.lock"

RUN_ID_FORMAT = "%Y%m%d-%H%M%S-%f"

# ============================================================================
# Exit Codes
# ============================================================================

EXIT_OK = 0
EXIT_UNEXPECTED = 1
EXIT_VALIDATION = 10
EXIT_BACKUP = 11
EXIT_TRANSACTION = 12
EXIT_ROLLBACK = 13
EXIT_SESSION_BUSY = 14
EXIT_COMMIT = 15
EXIT_BOOT_PENDING = 16

# ============================================================================
# Validator Tables
# ============================================================================

#: Variables in /etc/default/grub that carry the kernel command line
GRUB_CMDLINE_KEYS: tuple[str, ...] = (
    "GRUB_CMDLINE_LINUX_DEFAULT",
    "GRUB_CMDLINE_LINUX",
)

#: Parameters that identify the root device to the initramfs
ROOT_DEVICE_PARAMS: tuple[str, ...] = (
    "root=",
    "rd.lvm.lv=",
    "rd.luks.uuid=",
    "rd.luks.name=",
    "rd.md.uuid=",
)

#: Keywords accepted at the start of a modprobe.d line
MODPROBE_KEYWORDS: tuple[str, ...] = (
    "alias",
    "blacklist",
    "install",
    "options",
    "remove",
    "softdep",
    "weakdep",
)
