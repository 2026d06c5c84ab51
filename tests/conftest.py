"""
Shared test fixtures for softupdate tests.

Provides fixtures for:
- A temporary installation tree (bin/, lib/, MANIFEST.MF)
- An in-memory SQLite database with the update tables
- A fake distribution server keyed by URL
- A fully wired UpdateOrchestrator
"""
import hashlib
from contextlib import contextmanager
from pathlib import Path
from typing import Dict

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from softupdate.database import Base
from softupdate.models import UpdateCheck, UpdateConfig  # noqa: F401
from softupdate.services.artifact_sync import ArtifactSynchronizer
from softupdate.services.backup_manager import BackupManager
from softupdate.services.config_store import ConfigStore
from softupdate.services.distribution_client import TransportError
from softupdate.services.manifest import Manifest, ManifestStore
from softupdate.services.manifest_differ import ManifestDiffer
from softupdate.services.rollback_manager import RollbackManager
from softupdate.services.schema_migrator import SchemaMigrator
from softupdate.services.update_orchestrator import UpdateOrchestrator
from softupdate.services.version_resolver import VersionResolver

BASE_URL = "https://updates.example.com/client/"
METADATA_URL = "https://updates.example.com/client/maven-metadata.xml"

OLD_VERSION = "1.0.0"
NEW_VERSION = "1.1.0"

OLD_LIB = {
    "registration-client.jar": b"client-v1",
    "registration-services.jar": b"services-v1",
    "commons.jar": b"commons",
    "old-only.jar": b"dropped in 1.1.0",
}
NEW_LIB = {
    "registration-client.jar": b"client-v2",
    "registration-services.jar": b"services-v1",
    "commons.jar": b"commons",
    "new-lib.jar": b"added in 1.1.0",
}
BIN_FILES = {"run.sh": b"#!/bin/sh\necho v1\n"}


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def make_manifest(version: str, files: Dict[str, bytes]) -> Manifest:
    """Build a manifest recording each file's checksum"""
    manifest = Manifest(main_attributes={"Manifest-Version": version, "Created-By": "release-tool"})
    for name, data in files.items():
        manifest.add_entry(name, sha256(data))
    return manifest


def metadata_xml(version: str, last_updated: str = "20240315103000") -> bytes:
    return (
        "<?xml version='1.0' encoding='UTF-8'?>"
        "<metadata><groupId>io.example</groupId><versioning>"
        f"<version>{version}</version><lastUpdated>{last_updated}</lastUpdated>"
        "</versioning></metadata>"
    ).encode("utf-8")


def snapshot_tree(root: Path) -> Dict[str, bytes]:
    """Relative path -> bytes for every file under bin/, lib/ and the manifest"""
    tree = {}
    for item in sorted(root.rglob("*")):
        if item.is_file():
            tree[item.relative_to(root).as_posix()] = item.read_bytes()
    return tree


class FakeDistributionClient:
    """Serves files from a dict keyed by URL and records every request"""

    def __init__(self, files=None):
        self.files: Dict[str, bytes] = dict(files or {})
        self.fetched = []
        self.downloaded = []
        self.download_errors: Dict[str, Exception] = {}

    def fetch(self, url: str) -> bytes:
        self.fetched.append(url)
        if url not in self.files:
            raise TransportError(f"Fetch failed: 404 for {url}")
        return self.files[url]

    def download(self, url: str, destination: Path) -> int:
        self.downloaded.append(url)
        if url in self.download_errors:
            raise self.download_errors[url]
        if url not in self.files:
            raise TransportError(f"Download failed: 404 for {url}")
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(self.files[url])
        return len(self.files[url])


@pytest.fixture
def install_root(tmp_path):
    """Installed 1.0.0 release"""
    root = tmp_path / "install"
    (root / "bin").mkdir(parents=True)
    (root / "lib").mkdir()
    for name, data in BIN_FILES.items():
        (root / "bin" / name).write_bytes(data)
    for name, data in OLD_LIB.items():
        (root / "lib" / name).write_bytes(data)
    (root / "MANIFEST.MF").write_bytes(make_manifest(OLD_VERSION, OLD_LIB).to_bytes())
    return root


@pytest.fixture
def backup_root(tmp_path):
    return tmp_path / "backup"


@pytest.fixture
def fake_client():
    """Distribution server publishing 1.1.0"""
    files = {
        METADATA_URL: metadata_xml(NEW_VERSION),
        f"{BASE_URL}{NEW_VERSION}/MANIFEST.MF": make_manifest(NEW_VERSION, NEW_LIB).to_bytes(),
    }
    for name, data in NEW_LIB.items():
        files[f"{BASE_URL}{NEW_VERSION}/lib/{name}"] = data
    return FakeDistributionClient(files)


@pytest.fixture
def engine():
    """In-memory SQLite engine with the update tables"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    maker = sessionmaker(engine, expire_on_commit=False)

    @contextmanager
    def factory():
        session = maker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return factory


@pytest.fixture
def config_store(session_factory):
    return ConfigStore(session_factory=session_factory)


@pytest.fixture
def manifest_store(install_root, fake_client):
    return ManifestStore(install_root, fake_client, BASE_URL)


@pytest.fixture
def version_resolver(manifest_store, fake_client):
    return VersionResolver(manifest_store, fake_client, METADATA_URL)


@pytest.fixture
def differ(install_root):
    return ManifestDiffer(install_root / "lib")


@pytest.fixture
def synchronizer(install_root, fake_client, differ):
    return ArtifactSynchronizer(install_root / "lib", fake_client, BASE_URL, differ)


@pytest.fixture
def backup_manager(backup_root, install_root, config_store):
    return BackupManager(backup_root, install_root, config_store)


@pytest.fixture
def rollback_manager(install_root, config_store):
    return RollbackManager(install_root, config_store)


@pytest.fixture
def resources_root(tmp_path):
    """Directory standing in for the packaged sql/ resources"""
    root = tmp_path / "resources"
    (root / "sql").mkdir(parents=True)
    return root


@pytest.fixture
def schema_migrator(engine, config_store, rollback_manager, resources_root):
    return SchemaMigrator(engine, config_store, rollback_manager, resources_root=resources_root)


@pytest.fixture
def orchestrator(
    version_resolver,
    manifest_store,
    synchronizer,
    backup_manager,
    rollback_manager,
    schema_migrator,
    config_store,
    session_factory,
):
    return UpdateOrchestrator(
        version_resolver=version_resolver,
        manifest_store=manifest_store,
        synchronizer=synchronizer,
        backup_manager=backup_manager,
        rollback_manager=rollback_manager,
        schema_migrator=schema_migrator,
        config_store=config_store,
        component_names=("registration-client", "registration-services"),
        session_factory=session_factory,
    )


def write_scripts(resources_root: Path, version: str, forward: str = None, rollback: str = None) -> Path:
    """Write migration scripts for a version core"""
    folder = resources_root / "sql" / version
    folder.mkdir(parents=True, exist_ok=True)
    if forward is not None:
        (folder / "initial_db_scripts.sql").write_text(forward)
    if rollback is not None:
        (folder / "rollback_scripts.sql").write_text(rollback)
    return folder
