"""Deterministic collection naming from (owner, device, workspace)."""

import hashlib
import re
from dataclasses import dataclass
from typing import Optional

MAX_COLLECTION_NAME_LENGTH = 64
_NAME_PATTERN = re.compile(r'^[A-Za-z0-9](?:[A-Za-z0-9_]*[A-Za-z0-9])?$')


def clean_component(value: str) -> str:
    """Replace non-alphanumerics with ``_``, collapse runs and trim the ends."""
    cleaned = re.sub(r'[^A-Za-z0-9]', '_', value)
    cleaned = re.sub(r'_+', '_', cleaned)
    return cleaned.strip('_')


def create_collection_name(owner: str, device: str, workspace_path: str) -> str:
    """Build the collection name ``<owner>_<device>_<clean workspace>``.

    Names longer than ``MAX_COLLECTION_NAME_LENGTH`` are truncated and given an
    md5 suffix of the full name so that distinct workspaces stay distinct.

    Raises:
        ValueError: If any component is empty
    """
    if not owner or not device or not workspace_path:
        raise ValueError("owner, device and workspace_path are required")

    name = '_'.join(part for part in (clean_component(owner), clean_component(device),
                                      clean_component(workspace_path)) if part)
    if len(name) <= MAX_COLLECTION_NAME_LENGTH:
        return name

    suffix = hashlib.md5(name.encode('utf-8')).hexdigest()[:8]
    head = name[:MAX_COLLECTION_NAME_LENGTH - len(suffix) - 1].rstrip('_')
    return f"{head}_{suffix}"


def validate_collection_name(name: str) -> bool:
    """Letters, digits and inner underscores only, 1..64 chars."""
    return bool(name) and len(name) <= MAX_COLLECTION_NAME_LENGTH and bool(_NAME_PATTERN.match(name))


@dataclass(frozen=True)
class CollectionIdentity:
    """Stable (owner, device, workspace) tuple that selects one logical collection."""

    owner: str
    device: str
    workspace: str
    override_name: Optional[str] = None

    @property
    def name(self) -> str:
        return self.override_name or create_collection_name(self.owner, self.device, self.workspace)

    def __str__(self) -> str:
        return self.name
