"""
Update Session - Per-operation state shared between update steps

A fresh UpdateSession is created for every check or upgrade and handed from
step to step, so nothing about an in-flight operation lives on the
long-lived service objects.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional

from softupdate.services.manifest import Manifest


class UpgradeState(str, Enum):
    """
    States of an upgrade run.

    idle -> checking_version -> backing_up -> syncing -> finalizing -> completed
    Any failure after backing_up -> rolling_back -> rolled_back | failed_irrecoverable
    Failures before the snapshot exists -> failed
    """

    IDLE = "idle"
    CHECKING_VERSION = "checking_version"
    NO_UPDATE = "no_update"
    BACKING_UP = "backing_up"
    SYNCING = "syncing"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED_IRRECOVERABLE = "failed_irrecoverable"


@dataclass
class Snapshot:
    """A timestamped copy of bin/, lib/ and the manifest"""

    path: Path
    created_at: datetime
    source_version: Optional[str]


@dataclass
class UpdateSession:
    """Mutable state of one check or upgrade run"""

    current_version: Optional[str] = None
    latest_version: Optional[str] = None
    release_timestamp: Optional[str] = None
    local_manifest: Optional[Manifest] = None
    remote_manifest: Optional[Manifest] = None
    snapshot: Optional[Snapshot] = None
    state: UpgradeState = UpgradeState.IDLE
    history: List[UpgradeState] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def transition(self, state: UpgradeState) -> None:
        self.history.append(self.state)
        self.state = state
