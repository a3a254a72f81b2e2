from pathlib import Path

from pydantic import BaseModel

from .connection import ConnectionCredentials
from .options import BackupOptions, RestoreOptions, SyncOptions


class BackupRequest(BaseModel):
    source: ConnectionCredentials
    options: BackupOptions
    dry_run: bool = False


class SyncRequest(BaseModel):
    source: ConnectionCredentials
    destination: ConnectionCredentials
    options: SyncOptions
    dry_run: bool = False


class RestoreRequest(BaseModel):
    destination: ConnectionCredentials
    archive_path: Path
    options: RestoreOptions
