"""Manages workspace snapshots for persistent change tracking."""

import hashlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .snapshot import WorkspaceSnapshot

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = '2.0'


class SnapshotManager:
    """Manages loading and saving of workspace snapshots."""

    def __init__(self, storage_dir: Optional[Path] = None):
        """Initialize snapshot manager.

        Args:
            storage_dir: Directory to store snapshots (default: ~/.code_index/snapshots)
        """
        if storage_dir is None:
            storage_dir = Path.home() / '.code_index' / 'snapshots'
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    def get_project_id(self, project_path: str) -> str:
        """Generate a unique ID for a project based on its path.

        Args:
            project_path: Path to project

        Returns:
            MD5 hash of the normalized path
        """
        normalized_path = str(Path(project_path).resolve())
        return hashlib.md5(normalized_path.encode()).hexdigest()

    def get_snapshot_path(self, project_path: str) -> Path:
        return self.storage_dir / f'{self.get_project_id(project_path)}_snapshot.json'

    def get_metadata_path(self, project_path: str) -> Path:
        return self.storage_dir / f'{self.get_project_id(project_path)}_metadata.json'

    def save_snapshot(self, snapshot: WorkspaceSnapshot, metadata: Optional[Dict] = None) -> None:
        """Save a snapshot to disk.

        Args:
            snapshot: Snapshot to save
            metadata: Optional metadata to save alongside
        """
        project_path = snapshot.root_path

        snapshot_data = {
            'version': SNAPSHOT_VERSION,
            'timestamp': datetime.now().isoformat(),
            'snapshot': snapshot.to_dict(),
        }
        with open(self.get_snapshot_path(project_path), 'w') as f:
            json.dump(snapshot_data, f, indent=2)

        metadata_data = dict(metadata or {})
        metadata_data.update({
            'project_path': project_path,
            'project_id': self.get_project_id(project_path),
            'last_snapshot': datetime.now().isoformat(),
            'file_count': snapshot.file_count,
            'root_hash': snapshot.root_hash,
        })
        with open(self.get_metadata_path(project_path), 'w') as f:
            json.dump(metadata_data, f, indent=2)

        logger.debug(f"Saved snapshot for {project_path} (root {snapshot.root_hash[:12]})")

    def load_snapshot(self, project_path: str) -> Optional[WorkspaceSnapshot]:
        """Load a snapshot from disk.

        A missing, corrupt or incompatible file is treated as "no snapshot",
        which makes the next run a full index.

        Args:
            project_path: Path to project

        Returns:
            WorkspaceSnapshot or None if no usable snapshot exists
        """
        snapshot_path = self.get_snapshot_path(project_path)
        if not snapshot_path.exists():
            return None

        try:
            with open(snapshot_path, 'r') as f:
                snapshot_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Error loading snapshot {snapshot_path}: {e}")
            return None

        if snapshot_data.get('version') != SNAPSHOT_VERSION:
            logger.warning(f"Snapshot version mismatch: {snapshot_data.get('version')}, ignoring snapshot")
            return None

        try:
            return WorkspaceSnapshot.from_dict(snapshot_data['snapshot'])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Malformed snapshot {snapshot_path}: {e}")
            return None

    def load_metadata(self, project_path: str) -> Optional[Dict]:
        metadata_path = self.get_metadata_path(project_path)
        if not metadata_path.exists():
            return None
        try:
            with open(metadata_path, 'r') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Error loading metadata: {e}")
            return None

    def has_snapshot(self, project_path: str) -> bool:
        return self.get_snapshot_path(project_path).exists()

    def delete_snapshot(self, project_path: str) -> None:
        """Delete snapshot and metadata for a project."""
        for path in (self.get_snapshot_path(project_path), self.get_metadata_path(project_path)):
            if path.exists():
                path.unlink()

    def list_snapshots(self) -> List[Dict]:
        """List metadata of all stored snapshots, newest first."""
        snapshots = []
        for metadata_file in self.storage_dir.glob('*_metadata.json'):
            try:
                with open(metadata_file, 'r') as f:
                    snapshots.append(json.load(f))
            except (OSError, json.JSONDecodeError):
                logger.debug(f"Skipping unreadable metadata file {metadata_file}")
        return sorted(snapshots, key=lambda x: x.get('last_snapshot', ''), reverse=True)

    def get_snapshot_age(self, project_path: str) -> Optional[float]:
        """Get the age of a snapshot in seconds, or None if there is none."""
        snapshot_path = self.get_snapshot_path(project_path)
        if not snapshot_path.exists():
            return None
        return datetime.now().timestamp() - snapshot_path.stat().st_mtime
