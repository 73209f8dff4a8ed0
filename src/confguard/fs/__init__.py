"""Filesystem operations for backups, staging and atomic replacement.

This module provides the run/manifest layer every mutation is protected by:
per-run backup directories, the append-only TSV manifest and the flat,
reversible backup-name encoding.
"""

from confguard.fs.backup import BackupManager, BackupOutcome, BackupStatus, Run
from confguard.fs.manifest import ManifestEntry, ManifestWriter, read_manifest
from confguard.fs.paths import decode_backup_name, encode_backup_name

__all__ = [
    "BackupManager",
    "BackupOutcome",
    "BackupStatus",
    "ManifestEntry",
    "ManifestWriter",
    "Run",
    "decode_backup_name",
    "encode_backup_name",
    "read_manifest",
]
