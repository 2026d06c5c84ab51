"""
Artifact Synchronizer - Brings the library folder in line with the manifest

Each artifact is handled on its own: a failed download is logged and the
loop moves on, leaving the artifact to be picked up by the checksum check of
the next run.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import structlog

from softupdate.services.distribution_client import DistributionClient, TransportError
from softupdate.services.manifest import Manifest
from softupdate.services.manifest_differ import ManifestDiffer, PARTIAL_SUFFIX, checksum_matches
from softupdate.services.session import UpdateSession

logger = structlog.get_logger(__name__)

LIB_FOLDER = "lib"


class SyncError(Exception):
    """Raised when a sync cannot start at all"""

    pass


@dataclass
class SyncReport:
    """Outcome of one sync pass"""

    downloaded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        # Per-artifact failures are retried by the next run's checksum check
        return True


class ArtifactSynchronizer:
    """
    Deletes, downloads and replaces artifacts under the library folder
    """

    def __init__(
        self,
        lib_dir: Path,
        client: DistributionClient,
        client_base_url: str,
        differ: ManifestDiffer,
    ):
        self.lib_dir = Path(lib_dir)
        self.client = client
        self.client_base_url = client_base_url
        self.differ = differ

    def artifact_url(self, version: str, name: str) -> str:
        return f"{self.client_base_url}{version}/{LIB_FOLDER}/{name}"

    def delete_unknown_artifacts(self, manifest: Manifest) -> List[str]:
        """Remove files under the library folder that the manifest does not name"""
        deleted = []
        for name in sorted(self.differ.unknown_artifacts(manifest)):
            path = self.lib_dir / name
            path.unlink()
            deleted.append(name)
            logger.info("unknown_artifact_deleted", artifact=name)

        # Drop directories left empty, deepest first
        if self.lib_dir.exists():
            for directory in sorted(
                (d for d in self.lib_dir.rglob("*") if d.is_dir()),
                key=lambda d: len(d.parts),
                reverse=True,
            ):
                if not any(directory.iterdir()):
                    directory.rmdir()
        return deleted

    def sync(self, session: UpdateSession) -> SyncReport:
        """
        Download every manifest entry whose file is missing or stale

        Raises:
            SyncError: If the session has no manifest or release version
        """
        manifest = session.local_manifest
        if manifest is None or not session.latest_version:
            raise SyncError("Sync needs the installed manifest and the latest version")

        report = SyncReport()
        report.deleted = self.delete_unknown_artifacts(manifest)

        for name, entry in manifest.entries.items():
            if not self.differ.is_contained(name):
                logger.error("artifact_outside_lib_rejected", artifact=name)
                report.failed.append(name)
                continue
            if not self.differ.needs_sync(entry):
                report.skipped.append(name)
                continue

            url = self.artifact_url(session.latest_version, name)
            target = self.lib_dir / name
            partial = target.with_name(target.name + PARTIAL_SUFFIX)
            try:
                target.unlink(missing_ok=True)
                self.client.download(url, partial)
                if not checksum_matches(partial, entry.checksum):
                    partial.unlink(missing_ok=True)
                    logger.error("artifact_checksum_mismatch", artifact=name, url=url)
                    report.failed.append(name)
                    continue
                partial.replace(target)
                report.downloaded.append(name)
                logger.info("artifact_synced", artifact=name)
            except (TransportError, OSError) as e:
                partial.unlink(missing_ok=True)
                logger.error("artifact_sync_failed", artifact=name, url=url, error=str(e))
                report.failed.append(name)

        logger.info(
            "artifact_sync_complete",
            downloaded=len(report.downloaded),
            failed=len(report.failed),
            skipped=len(report.skipped),
            deleted=len(report.deleted),
        )
        return report
