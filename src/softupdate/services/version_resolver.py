"""
Version Resolver - Installed and released version lookup

The installed version is the ``Manifest-Version`` of the local manifest. The
released version and its timestamp come from the metadata XML published by
the distribution server. Versions are compared as literal strings: a release
that only changes metadata but keeps its version string is not an update.
"""
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from typing import Optional

import structlog

from softupdate.services.distribution_client import DistributionClient, TransportError
from softupdate.services.manifest import ManifestError, ManifestStore
from softupdate.services.session import UpdateSession

logger = structlog.get_logger(__name__)

VERSION_TAG = "version"
LAST_UPDATED_TAG = "lastUpdated"
RELEASE_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
RELEASE_TIMESTAMP_PATTERN = re.compile(r"[0-9]{14}")


class MetadataError(Exception):
    """Raised when the release metadata cannot be fetched or parsed"""

    pass


class ReleaseTimestampError(ValueError):
    """Raised when a release timestamp is not 14 digits of YYYYMMDDHHMMSS"""

    def __init__(self, value: Optional[str], reason: str = "expected 14 digits YYYYMMDDHHMMSS"):
        self.value = value
        super().__init__(f"Invalid release timestamp {value!r}: {reason}")


def parse_release_timestamp(value: Optional[str]) -> datetime:
    """
    Parse a ``YYYYMMDDHHMMSS`` release timestamp as UTC

    Raises:
        ReleaseTimestampError: If the value is not a valid timestamp
    """
    if value is None or not RELEASE_TIMESTAMP_PATTERN.fullmatch(value):
        raise ReleaseTimestampError(value)
    try:
        parsed = datetime.strptime(value, RELEASE_TIMESTAMP_FORMAT)
    except ValueError as e:
        raise ReleaseTimestampError(value, str(e)) from e
    return parsed.replace(tzinfo=timezone.utc)


def _local_name(tag: str) -> str:
    """Drop an ElementTree ``{namespace}`` prefix"""
    return tag.rsplit("}", 1)[-1]


def _element_text(root: ET.Element, tag: str) -> str:
    """Text of the first element named ``tag`` at or below root, in any namespace"""
    element = next(
        (el for el in root.iter() if isinstance(el.tag, str) and _local_name(el.tag) == tag),
        None,
    )
    if element is None:
        raise MetadataError(f"Release metadata has no <{tag}> element")
    text = (element.text or "").strip()
    if not text:
        raise MetadataError(f"Release metadata <{tag}> element is empty")
    return text


class VersionResolver:
    """
    Resolves the installed and latest released versions
    """

    def __init__(
        self,
        manifest_store: ManifestStore,
        client: DistributionClient,
        metadata_url: str,
    ):
        self.manifest_store = manifest_store
        self.client = client
        self.metadata_url = metadata_url

    def get_current_version(self, session: UpdateSession) -> Optional[str]:
        """
        Get the installed version from the local manifest

        Returns None when no manifest is installed or it cannot be read.
        """
        logger.info("checking_current_version")
        try:
            manifest = self.manifest_store.load_local()
        except ManifestError as e:
            logger.error("current_version_unavailable", error=str(e))
            return session.current_version

        if manifest is not None:
            session.local_manifest = manifest
            session.current_version = manifest.version
        logger.info("current_version_checked", current_version=session.current_version)
        return session.current_version

    def get_latest_version(self, session: UpdateSession) -> str:
        """
        Get the latest released version from the metadata document

        Also caches the release timestamp on the session.

        Raises:
            MetadataError: If the metadata cannot be fetched or parsed
        """
        logger.info("checking_latest_version", url=self.metadata_url)
        try:
            document = self.client.fetch(self.metadata_url)
        except TransportError as e:
            raise MetadataError(f"Release metadata unavailable: {e}") from e

        try:
            root = ET.fromstring(document)
        except ET.ParseError as e:
            raise MetadataError(f"Release metadata is not valid XML: {e}") from e

        session.latest_version = _element_text(root, VERSION_TAG)
        session.release_timestamp = _element_text(root, LAST_UPDATED_TAG)
        logger.info(
            "latest_version_checked",
            latest_version=session.latest_version,
            release_timestamp=session.release_timestamp,
        )
        return session.latest_version

    def has_update(self, session: Optional[UpdateSession] = None) -> bool:
        """
        Check whether the released version differs from the installed one

        Any failure is reported as "no update".
        """
        session = session or UpdateSession()
        logger.info("checking_for_update")
        try:
            current = self.get_current_version(session)
            latest = self.get_latest_version(session)
        except Exception as e:
            logger.error("update_check_failed", error=str(e))
            return False

        if current is None:
            logger.warning("update_check_without_local_manifest", latest_version=latest)
            return False
        return current != latest

    def get_latest_version_release_timestamp(self, session: UpdateSession) -> datetime:
        """
        Get the release time of the latest version

        Raises:
            MetadataError: If the metadata has to be fetched and cannot be
            ReleaseTimestampError: If the published timestamp is malformed
        """
        if session.release_timestamp is None:
            self.get_latest_version(session)
        return parse_release_timestamp(session.release_timestamp)
