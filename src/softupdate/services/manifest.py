"""
Manifest Store - Local and remote artifact manifests

Manifests use the JAR manifest text layout: a main section carrying
``Manifest-Version`` followed by one ``Name:`` section per artifact. The
artifact checksum travels in a ``Checksum`` attribute or, for manifests
produced by older release tooling, in ``Content-Type``.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from softupdate.services.distribution_client import DistributionClient

logger = structlog.get_logger(__name__)

MANIFEST_FILE = "MANIFEST.MF"
MANIFEST_VERSION = "Manifest-Version"
NAME_ATTRIBUTE = "Name"
CHECKSUM_ATTRIBUTE = "Checksum"
CONTENT_TYPE_ATTRIBUTE = "Content-Type"

MAX_LINE_BYTES = 72


class ManifestError(Exception):
    """Raised when a manifest cannot be read or parsed"""

    pass


@dataclass
class ManifestEntry:
    """A single artifact section of a manifest"""

    name: str
    checksum: Optional[str]
    content_type: Optional[str] = None
    attributes: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_attributes(cls, name: str, attributes: Dict[str, str]) -> "ManifestEntry":
        checksum = attributes.get(CHECKSUM_ATTRIBUTE) or attributes.get(CONTENT_TYPE_ATTRIBUTE)
        return cls(
            name=name,
            checksum=checksum,
            content_type=attributes.get(CONTENT_TYPE_ATTRIBUTE),
            attributes=dict(attributes),
        )

    def to_attributes(self) -> Dict[str, str]:
        attributes = dict(self.attributes)
        if self.content_type and CONTENT_TYPE_ATTRIBUTE not in attributes:
            attributes[CONTENT_TYPE_ATTRIBUTE] = self.content_type
        if self.checksum and self.checksum not in (
            attributes.get(CHECKSUM_ATTRIBUTE),
            attributes.get(CONTENT_TYPE_ATTRIBUTE),
        ):
            if CONTENT_TYPE_ATTRIBUTE in attributes:
                attributes[CHECKSUM_ATTRIBUTE] = self.checksum
            else:
                attributes[CONTENT_TYPE_ATTRIBUTE] = self.checksum
        return attributes


@dataclass
class Manifest:
    """Main attributes plus per-artifact entries, in file order"""

    main_attributes: Dict[str, str] = field(default_factory=dict)
    entries: Dict[str, ManifestEntry] = field(default_factory=dict)
    raw: Optional[bytes] = field(default=None, repr=False, compare=False)

    @property
    def version(self) -> Optional[str]:
        return self.main_attributes.get(MANIFEST_VERSION)

    def add_entry(self, name: str, checksum: str, **attributes: str) -> ManifestEntry:
        entry = ManifestEntry(name=name, checksum=checksum, attributes=dict(attributes))
        self.entries[name] = entry
        return entry

    def to_bytes(self) -> bytes:
        """Serialize to JAR manifest text, wrapping lines at 72 bytes"""
        lines: List[str] = []
        main = dict(self.main_attributes)
        if MANIFEST_VERSION in main:
            lines.extend(_wrap(MANIFEST_VERSION, main.pop(MANIFEST_VERSION)))
        for key, value in main.items():
            lines.extend(_wrap(key, value))
        lines.append("")

        for name, entry in self.entries.items():
            lines.extend(_wrap(NAME_ATTRIBUTE, name))
            for key, value in entry.to_attributes().items():
                lines.extend(_wrap(key, value))
            lines.append("")

        return ("\r\n".join(lines) + "\r\n").encode("utf-8")


def _wrap(key: str, value: str) -> List[str]:
    """Split a header into a first line and space-prefixed continuation lines"""
    line = f"{key}: {value}"
    result: List[str] = []
    current = ""
    limit = MAX_LINE_BYTES
    for char in line:
        if len((current + char).encode("utf-8")) > limit:
            result.append(current)
            current = " "
            limit = MAX_LINE_BYTES
        current += char
    result.append(current)
    return result


def _parse_header(line: str, line_number: int) -> tuple:
    key, sep, value = line.partition(":")
    if not sep or not key or " " in key:
        raise ManifestError(f"Invalid manifest header on line {line_number}: {line!r}")
    if value.startswith(" "):
        value = value[1:]
    return key, value


def parse_manifest(data: bytes) -> Manifest:
    """
    Parse JAR manifest text

    Raises:
        ManifestError: If the text is not a valid manifest
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ManifestError(f"Manifest is not valid UTF-8: {e}") from e

    sections: List[Dict[str, str]] = []
    current: Dict[str, str] = {}
    last_key: Optional[str] = None

    for line_number, line in enumerate(text.splitlines(), start=1):
        if not line:
            if current or not sections:
                sections.append(current)
            current = {}
            last_key = None
            continue
        if line.startswith(" "):
            if last_key is None:
                raise ManifestError(f"Continuation without header on line {line_number}")
            current[last_key] += line[1:]
            continue
        key, value = _parse_header(line, line_number)
        current[key] = value
        last_key = key

    if current or not sections:
        sections.append(current)

    main_attributes = sections[0]
    entries: Dict[str, ManifestEntry] = {}
    for section in sections[1:]:
        attributes = dict(section)
        name = attributes.pop(NAME_ATTRIBUTE, None)
        if not name:
            raise ManifestError("Manifest entry section is missing its Name attribute")
        entries[name] = ManifestEntry.from_attributes(name, attributes)

    return Manifest(main_attributes=main_attributes, entries=entries, raw=data)


class ManifestStore:
    """
    Loads the installed manifest and fetches the release manifest
    """

    def __init__(
        self,
        install_root: Path,
        client: DistributionClient,
        client_base_url: str,
    ):
        self.install_root = Path(install_root)
        self.client = client
        self.client_base_url = client_base_url

    @property
    def manifest_path(self) -> Path:
        return self.install_root / MANIFEST_FILE

    def remote_manifest_url(self, version: str) -> str:
        return f"{self.client_base_url}{version}/{MANIFEST_FILE}"

    def load_local(self) -> Optional[Manifest]:
        """
        Load the installed manifest

        Returns:
            The manifest, or None if none is installed

        Raises:
            ManifestError: If the manifest exists but cannot be read
        """
        if not self.manifest_path.exists():
            logger.info("local_manifest_missing", path=str(self.manifest_path))
            return None
        try:
            data = self.manifest_path.read_bytes()
        except OSError as e:
            logger.error("local_manifest_unreadable", path=str(self.manifest_path), error=str(e))
            raise ManifestError(f"Local manifest not readable: {e}") from e
        return parse_manifest(data)

    def fetch_remote(self, version: str) -> Manifest:
        """
        Fetch and parse the manifest of a release

        Raises:
            TransportError: If the manifest cannot be downloaded
            ManifestError: If the downloaded manifest cannot be parsed
        """
        url = self.remote_manifest_url(version)
        logger.info("fetching_remote_manifest", url=url)
        manifest = parse_manifest(self.client.fetch(url))
        logger.info("remote_manifest_fetched", version=manifest.version, entries=len(manifest.entries))
        return manifest

    def replace_local(self, manifest: Manifest) -> None:
        """Atomically overwrite the installed manifest"""
        data = manifest.raw if manifest.raw is not None else manifest.to_bytes()
        tmp_path = self.manifest_path.with_name(MANIFEST_FILE + ".tmp")
        try:
            with open(tmp_path, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.manifest_path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
        logger.info("local_manifest_replaced", path=str(self.manifest_path), version=manifest.version)
