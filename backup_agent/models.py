"""
Data model for the backup agent.

Nothing in here touches the network or the filesystem; the retry queue and the
orchestrator own persistence and side effects.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class Connection:
    """Database connection descriptor for one site."""
    database: str
    host: str = '127.0.0.1'
    port: int = 3306
    username: str = 'forge'
    password: str = field(default='', repr=False)
    driver: str = 'mysql'


@dataclass(frozen=True)
class SiteTarget:
    """One backup unit as produced by the site scanner."""
    site: str
    database: str
    connection: Connection
    path: Optional[str] = None


@dataclass
class BackupJob:
    """Per-site execution context, owned by a single executor run."""
    target: SiteTarget
    encryption_key: str = field(repr=False)
    artifact_name: str
    backup_id: Optional[int] = None
    dump_path: Optional[str] = None
    table_count: int = 0
    encrypted_path: Optional[str] = None
    checksum: Optional[str] = None
    size: Optional[int] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    logs: List[str] = field(default_factory=list)
    # Retry queue failure raised inside the upload progress hook
    queue_error: Optional[Exception] = field(default=None, repr=False)

    @property
    def filename(self) -> str:
        """Name of the encrypted artifact as reported to the panel."""
        return f"{self.artifact_name}.sql.enc"

    @property
    def remote_path(self) -> str:
        return f"{self.target.database}/{self.filename}"


@dataclass
class RetryItem:
    """A panel API call waiting to be delivered."""
    endpoint: str
    method: str
    payload: Dict[str, Any]
    attempts: int = 0
    next_attempt_at: int = 0
    created_at: int = 0
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RetryItem':
        return cls(
            endpoint=data['endpoint'],
            method=data['method'],
            payload=dict(data.get('payload') or {}),
            attempts=int(data.get('attempts', 0)),
            next_attempt_at=int(data.get('next_attempt_at', 0)),
            created_at=int(data.get('created_at', 0)),
            # Entries written without an id get one on first load
            id=data.get('id') or uuid.uuid4().hex,
        )


@dataclass
class Outcome:
    """Result of one site's pipeline."""
    site: str
    database: str
    success: bool
    reason: Optional[str] = None
    backup_id: Optional[int] = None
    filename: Optional[str] = None

    @classmethod
    def succeeded(cls, job: BackupJob) -> 'Outcome':
        return cls(
            site=job.target.site,
            database=job.target.database,
            success=True,
            backup_id=job.backup_id,
            filename=job.filename,
        )

    @classmethod
    def failed(cls, job: BackupJob, reason: str) -> 'Outcome':
        return cls(
            site=job.target.site,
            database=job.target.database,
            success=False,
            reason=reason,
            backup_id=job.backup_id,
        )


@dataclass
class RunResult:
    """Aggregate of one backup run."""
    successful: int = 0
    failed: int = 0
    queue_depth: int = 0
    outcomes: List[Outcome] = field(default_factory=list)

    def record(self, outcome: Outcome):
        self.outcomes.append(outcome)
        if outcome.success:
            self.successful += 1
        else:
            self.failed += 1

    @property
    def exit_code(self) -> int:
        return 1 if self.failed > 0 else 0


@dataclass
class DrainResult:
    """Outcome of one retry queue drain pass."""
    processed: int = 0
    failed: int = 0
    remaining: int = 0
    panel_available: bool = True
    ready: int = 0

    @property
    def exit_code(self) -> int:
        if self.failed > 0:
            return 1
        if self.ready > 0 and not self.panel_available:
            return 1
        return 0
