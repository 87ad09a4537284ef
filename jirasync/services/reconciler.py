"""Release and sprint reconciliation"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Sequence

from jirasync.services.github_client import IterationRef, Milestone, SourceRecord
from jirasync.services.jira_client import JiraClient
from jirasync.services.watermark import parse_timestamp
from jirasync.sync_config import ProjectConfiguration

logger = logging.getLogger(__name__)


def _day(value: Optional[str]) -> Optional[str]:
    """YYYY-MM-DD part of a date or timestamp; timezone offsets are ignored."""
    if not value:
        return None
    return str(value).split("T")[0]


@dataclass(frozen=True)
class TargetRelease:
    name: str
    released: bool
    release_date: Optional[str]

    @classmethod
    def from_milestone(cls, project: ProjectConfiguration, milestone: Milestone) -> "TargetRelease":
        release_date = _day(milestone.due_on)
        return cls(
            name=project.release_name(milestone.title),
            released=milestone.closed,
            release_date=release_date,
        )


@dataclass(frozen=True)
class TargetSprint:
    name: str
    start_date: str
    end_date: str

    @classmethod
    def from_iteration(cls, iteration: IterationRef) -> Optional["TargetSprint"]:
        """None when the iteration lacks a start date or duration."""
        if not iteration.start_date or not iteration.duration:
            return None
        start = parse_timestamp(iteration.start_date)
        end = start + timedelta(days=iteration.duration)
        return cls(
            name=iteration.title,
            start_date=start.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
            end_date=end.strftime("%Y-%m-%dT%H:%M:%S.000Z"),
        )


@dataclass
class ReconcileStats:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0


@dataclass
class LookupTables:
    """Name -> Jira id maps for one project pass; never persisted."""

    fix_versions: Dict[str, str] = field(default_factory=dict)
    sprints: Dict[str, int] = field(default_factory=dict)


class EntityReconciler:
    """Bring Jira releases and sprints in line with what the fetched records reference."""

    def __init__(self, jira: JiraClient, project: ProjectConfiguration):
        self.jira = jira
        self.project = project
        self.release_stats = ReconcileStats()
        self.sprint_stats = ReconcileStats()

    def reconcile(self, records: Sequence[SourceRecord]) -> LookupTables:
        return LookupTables(
            fix_versions=self.reconcile_releases(records),
            sprints=self.reconcile_sprints(records),
        )

    # -- releases ------------------------------------------------------------

    def target_releases(self, records: Sequence[SourceRecord]) -> List[TargetRelease]:
        """Milestones referenced by the records, first occurrence per title wins."""
        seen = set()
        targets = []
        for record in records:
            milestone = record.milestone
            if milestone is None or not milestone.title or milestone.title in seen:
                continue
            seen.add(milestone.title)
            targets.append(TargetRelease.from_milestone(self.project, milestone))
        return targets

    def reconcile_releases(self, records: Sequence[SourceRecord]) -> Dict[str, str]:
        existing = {r.name: r for r in self.jira.get_releases()}

        for target in self.target_releases(records):
            current = existing.get(target.name)
            if current is None:
                logger.info(f"Creating release '{target.name}'")
                self.jira.create_release(target.name, target.released, target.release_date)
                self.release_stats.created += 1
                continue

            if current.released != target.released or _day(current.release_date) != target.release_date:
                logger.info(f"Updating release '{target.name}'")
                self.jira.update_release(current.id, target.name, target.released, target.release_date)
                self.release_stats.updated += 1
            else:
                self.release_stats.unchanged += 1

        return {r.name: r.id for r in self.jira.get_releases()}

    # -- sprints -------------------------------------------------------------

    def target_sprints(self, records: Sequence[SourceRecord]) -> List[IterationRef]:
        """Iterations on the configured board, first occurrence per title wins."""
        seen = set()
        targets = []
        for record in records:
            item = record.board_item(self.project.github.board)
            if item is None or item.sprint is None or not item.sprint.title:
                continue
            if item.sprint.title in seen:
                continue
            seen.add(item.sprint.title)
            targets.append(item.sprint)
        return targets

    def reconcile_sprints(self, records: Sequence[SourceRecord]) -> Dict[str, int]:
        existing = {s.name: s for s in self.jira.get_sprints()}

        for iteration in self.target_sprints(records):
            target = TargetSprint.from_iteration(iteration)
            if target is None:
                logger.debug(f"Sprint '{iteration.title}' has no start date or duration, skipping")
                self.sprint_stats.skipped += 1
                continue

            current = existing.get(target.name)
            if current is None:
                logger.info(f"Creating sprint '{target.name}'")
                self.jira.create_sprint(target.name, target.start_date, target.end_date)
                self.sprint_stats.created += 1
                continue

            if _day(current.start_date) != _day(target.start_date) or _day(current.end_date) != _day(
                target.end_date
            ):
                logger.info(f"Updating sprint '{target.name}'")
                self.jira.update_sprint(current.id, target.name, target.start_date, target.end_date)
                self.sprint_stats.updated += 1
            else:
                self.sprint_stats.unchanged += 1

        return {s.name: s.id for s in self.jira.get_sprints()}
