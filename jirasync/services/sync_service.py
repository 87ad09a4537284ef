"""Issue synchronization service"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from sqlalchemy.orm import Session

from jirasync.config import Settings
from jirasync.exceptions import ConfigurationError, SourceFetchError, SyncInProgressError
from jirasync.models import FailedRecord, SyncLog
from jirasync.models.sync_log import SyncStatus
from jirasync.services.fetcher import BatchFetcher
from jirasync.services.github_client import GitHubClient, SourceRecord
from jirasync.services.governor import CallGovernor
from jirasync.services.issue_upsert import IssueUpsertEngine, UpsertOutcome
from jirasync.services.jira_client import JiraClient
from jirasync.services.reconciler import EntityReconciler
from jirasync.services.watermark import ProjectWatermark, WatermarkStore
from jirasync.sync_config import ProjectConfiguration, load_sync_yaml, resolve_project_configurations

logger = logging.getLogger(__name__)

_run_lock = threading.Lock()


@dataclass
class ProjectResult:
    name: str
    next_watermark: str
    status: SyncStatus
    stats: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class SyncRunResult:
    projects: List[ProjectResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(p.status != SyncStatus.FAILED for p in self.projects)

    def watermarks(self) -> List[ProjectWatermark]:
        return [ProjectWatermark(name=p.name, next_watermark=p.next_watermark) for p in self.projects]

    def state(self) -> Dict[str, Any]:
        return WatermarkStore.merge(self.watermarks())


class SyncService:
    """Runs one synchronization pass over every configured project.

    Projects are processed strictly one after another. Jira metadata for all
    projects is resolved before anything is written, so a configuration
    problem aborts the run with nothing synchronized. A project whose remote
    systems cannot be reached is reported as failed and keeps its previous
    watermark; the remaining projects still run.
    """

    def __init__(
        self,
        db: Session,
        *,
        github_client: GitHubClient,
        jira_client_factory: Callable[[], JiraClient],
        throttle_cooldown_seconds: float = 30.0,
        retry_failed_records: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.github = github_client
        self.jira_client_factory = jira_client_factory
        self.throttle_cooldown_seconds = throttle_cooldown_seconds
        self.retry_failed_records = retry_failed_records
        self._sleep = sleep

    @classmethod
    def from_settings(cls, db: Session, settings: Settings) -> "SyncService":
        governor = CallGovernor(settings.jira_min_call_interval_ms / 1000.0)
        github = GitHubClient(settings.github_read_token, settings.github_graphql_url)
        return cls(
            db,
            github_client=github,
            jira_client_factory=lambda: JiraClient(
                settings.jira_host, settings.jira_write_token, governor=governor
            ),
            throttle_cooldown_seconds=settings.throttle_cooldown_seconds,
            retry_failed_records=settings.retry_failed_records,
        )

    def run(self, configurations: Sequence[ProjectConfiguration]) -> SyncRunResult:
        """Sync every project; raises ConfigurationError before any write if Jira lacks a named entity."""
        logger.info(f"Starting sync of {len(configurations)} project(s)")

        clients: Dict[str, JiraClient] = {}
        failures: Dict[str, str] = {}
        for project in configurations:
            try:
                client = self.jira_client_factory()
                client.initialize(
                    project_key=project.jira.project_key,
                    component=project.jira.component,
                    sprint_board=project.jira.sprint_board,
                    required_issue_types=project.issue_type_mapping.results,
                )
                clients[project.name] = client
            except ConfigurationError as e:
                logger.error(f"Configuration error for {project.name}: {e}")
                self._log_sync(project.name, SyncStatus.FAILED, f"Configuration error: {e}")
                raise
            except Exception as e:
                logger.error(f"Cannot initialize Jira for {project.name}: {e}")
                failures[project.name] = str(e)

        result = SyncRunResult()
        for project in configurations:
            if project.name in failures:
                error = failures[project.name]
                self._log_sync(project.name, SyncStatus.FAILED, f"Sync failed: {error}")
                result.projects.append(
                    ProjectResult(
                        name=project.name,
                        next_watermark=project.github.start_date,
                        status=SyncStatus.FAILED,
                        error=error,
                    )
                )
                continue
            result.projects.append(self.sync_project(project, clients[project.name]))

        logger.info(
            f"Sync finished: {sum(p.status == SyncStatus.SUCCESS for p in result.projects)} succeeded, "
            f"{sum(p.status == SyncStatus.FAILED for p in result.projects)} failed"
        )
        return result

    def sync_project(self, project: ProjectConfiguration, jira: JiraClient) -> ProjectResult:
        """One project pass: fetch, reconcile releases and sprints, upsert issues."""
        logger.info(f"Starting sync for project: {project.name} (after {project.github.start_date})")
        stats = {"fetched": 0, "carried_over": 0}

        try:
            fetched = BatchFetcher(self.github).fetch(project)
            stats["fetched"] = len(fetched.records)

            carried = self._carried_over_records(project, {r.number for r in fetched.records})
            stats["carried_over"] = len(carried)
            records = carried + fetched.records

            reconciler = EntityReconciler(jira, project)
            lookups = reconciler.reconcile(records)
            stats["releases_created"] = reconciler.release_stats.created
            stats["releases_updated"] = reconciler.release_stats.updated
            stats["sprints_created"] = reconciler.sprint_stats.created
            stats["sprints_updated"] = reconciler.sprint_stats.updated

            engine = IssueUpsertEngine(
                jira,
                project,
                throttle_cooldown_seconds=self.throttle_cooldown_seconds,
                sleep=self._sleep,
            )
            for outcome in engine.upsert_all(records, lookups):
                self._record_outcome(project, outcome)
            stats.update(engine.stats)

        except Exception as e:
            logger.error(f"Sync failed for {project.name}: {e}")
            self._log_sync(project.name, SyncStatus.FAILED, f"Sync failed: {str(e)}")
            return ProjectResult(
                name=project.name,
                next_watermark=project.github.start_date,
                status=SyncStatus.FAILED,
                stats=stats,
                error=str(e),
            )

        logger.info(f"Sync completed for {project.name}: {stats}")
        self._log_sync(project.name, SyncStatus.SUCCESS, f"Sync completed: {stats}")
        return ProjectResult(
            name=project.name,
            next_watermark=fetched.next_watermark,
            status=SyncStatus.SUCCESS,
            stats=stats,
        )

    # -- failed-record carry-over --------------------------------------------

    def pending_failures(self, project_name: str) -> List[FailedRecord]:
        return (
            self.db.query(FailedRecord)
            .filter(FailedRecord.project_name == project_name)
            .order_by(FailedRecord.id)
            .all()
        )

    def _carried_over_records(
        self, project: ProjectConfiguration, fetched_numbers: Set[int]
    ) -> List[SourceRecord]:
        if not self.retry_failed_records:
            return []

        records: List[SourceRecord] = []
        for row in self.pending_failures(project.name):
            if row.source_number in fetched_numbers:
                continue
            try:
                record = self.github.get_issue(
                    project.github.owner,
                    project.github.repo,
                    row.source_number,
                    project.github.board_fields,
                )
            except SourceFetchError as e:
                logger.warning(f"Cannot re-read failed record {row.global_id}, keeping it: {e}")
                continue
            if record is None:
                logger.warning(f"Failed record {row.global_id} no longer exists on GitHub, dropping it")
                self.db.delete(row)
                self.db.commit()
                continue
            records.append(record)

        if records:
            logger.info(f"Retrying {len(records)} previously failed record(s) for {project.name}")
        return records

    def _record_outcome(self, project: ProjectConfiguration, outcome: UpsertOutcome) -> None:
        row = (
            self.db.query(FailedRecord)
            .filter(
                FailedRecord.project_name == project.name,
                FailedRecord.source_number == outcome.record.number,
            )
            .first()
        )

        if outcome.ok:
            if row is not None:
                logger.info(f"Previously failed record {outcome.global_id} synced as {outcome.jira_key}")
                self.db.delete(row)
                self.db.commit()
            return

        self._log_sync(
            project.name,
            SyncStatus.FAILED,
            f"Failed to sync issue: {outcome.error}",
            source_number=outcome.record.number,
            global_id=outcome.global_id,
        )
        if not self.retry_failed_records:
            return

        if row is None:
            row = FailedRecord(
                project_name=project.name,
                source_number=outcome.record.number,
                global_id=outcome.global_id,
                attempts=0,
            )
            self.db.add(row)
        row.source_url = outcome.record.url
        row.source_updated_at = outcome.record.updated_at
        row.last_error = outcome.error
        row.attempts = (row.attempts or 0) + 1
        self.db.commit()

    def _log_sync(
        self,
        project_name: str,
        status: SyncStatus,
        message: str = "",
        source_number: Optional[int] = None,
        global_id: Optional[str] = None,
        jira_key: Optional[str] = None,
    ):
        """Log sync operation"""
        log = SyncLog(
            project_name=project_name,
            status=status,
            message=message,
            source_number=source_number,
            global_id=global_id,
            jira_key=jira_key,
        )
        self.db.add(log)
        self.db.commit()


def is_sync_running() -> bool:
    return _run_lock.locked()


def run_from_files(
    db: Session, settings: Settings, *, service: Optional[SyncService] = None
) -> SyncRunResult:
    """Load sync.yaml and the saved state, run one pass, then rewrite the state file.

    Raises SyncInProgressError if another pass is running in this process and
    ConfigurationError if the configuration is unusable (state is left as is).
    """
    if not _run_lock.acquire(blocking=False):
        raise SyncInProgressError("A sync pass is already running")
    try:
        watermarks = WatermarkStore.from_file(settings.sync_state_path)
        sync_yaml = load_sync_yaml(settings.sync_config_path)
        configurations = resolve_project_configurations(sync_yaml, watermarks)

        service = service or SyncService.from_settings(db, settings)
        result = service.run(configurations)
        WatermarkStore.save(settings.sync_state_path, result.state())
        return result
    finally:
        _run_lock.release()
