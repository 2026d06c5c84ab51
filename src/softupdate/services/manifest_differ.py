"""
Manifest Differ - Decides which artifacts need to change

Works against the installed manifest after it has been replaced with the
release manifest: entries whose file is missing or whose checksum differs
need a download, files the manifest no longer names are deleted.
"""
import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Set

import structlog

from softupdate.services.manifest import Manifest, ManifestEntry

logger = structlog.get_logger(__name__)

PARTIAL_SUFFIX = ".part"


def calculate_checksum(file_path: Path) -> str:
    """Calculate SHA256 checksum of a file"""
    sha256_hash = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256_hash.update(chunk)
    return sha256_hash.hexdigest()


def checksum_matches(file_path: Path, expected: Optional[str]) -> bool:
    """Compare a file against a recorded checksum, ignoring case"""
    if not expected:
        return True
    return calculate_checksum(file_path).lower() == expected.strip().lower()


@dataclass
class ArtifactDiff:
    """Artifact names to download or delete"""

    to_add: Set[str] = field(default_factory=set)
    to_update: Set[str] = field(default_factory=set)
    to_delete: Set[str] = field(default_factory=set)

    @property
    def to_fetch(self) -> Set[str]:
        return self.to_add | self.to_update

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_update or self.to_delete)


class ManifestDiffer:
    """
    Compares the library folder on disk with a manifest
    """

    def __init__(self, lib_dir: Path):
        self.lib_dir = Path(lib_dir)

    def artifact_path(self, name: str) -> Path:
        return self.lib_dir / name

    def is_contained(self, name: str) -> bool:
        """True if the entry name resolves to a path inside the library folder"""
        if not name or Path(name).is_absolute():
            return False
        lib_root = self.lib_dir.resolve()
        resolved = (lib_root / name).resolve()
        return resolved != lib_root and lib_root in resolved.parents

    def needs_sync(self, entry: ManifestEntry) -> bool:
        """True if the entry's file is missing or its checksum differs"""
        path = self.artifact_path(entry.name)
        if not path.is_file():
            return True
        return not checksum_matches(path, entry.checksum)

    def unknown_artifacts(self, manifest: Manifest) -> Set[str]:
        """Files under the library folder that the manifest does not name"""
        if not self.lib_dir.exists():
            return set()
        unknown = set()
        for item in self.lib_dir.rglob("*"):
            if item.is_file():
                name = item.relative_to(self.lib_dir).as_posix()
                if name not in manifest.entries:
                    unknown.add(name)
        return unknown

    def diff(self, manifest: Manifest) -> ArtifactDiff:
        """Compute the changes needed to make disk match the manifest"""
        result = ArtifactDiff(to_delete=self.unknown_artifacts(manifest))
        for name, entry in manifest.entries.items():
            if not self.is_contained(name):
                logger.warning("artifact_outside_lib_ignored", artifact=name)
                continue
            if not self.artifact_path(name).is_file():
                result.to_add.add(name)
            elif not checksum_matches(self.artifact_path(name), entry.checksum):
                result.to_update.add(name)

        logger.info(
            "manifest_diff_computed",
            to_add=len(result.to_add),
            to_update=len(result.to_update),
            to_delete=len(result.to_delete),
        )
        return result
