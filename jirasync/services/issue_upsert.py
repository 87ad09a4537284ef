"""Create-or-update of Jira issues from GitHub records"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from jirasync.exceptions import MissingTransitionError
from jirasync.services.github_client import SourceRecord
from jirasync.services.jira_client import JiraClient, is_throttling_error
from jirasync.services.markup import markdown_to_jira
from jirasync.services.reconciler import LookupTables
from jirasync.sync_config import ProjectConfiguration

logger = logging.getLogger(__name__)

DEFAULT_STORY_POINTS = 1


def remote_link_title(repo: str, number: int) -> str:
    """``podman-desktop`` #123 -> ``PD #123``"""
    initials = "".join(word[:1].upper() for word in repo.split("-") if word)
    return f"{initials} #{number}"


def jira_label(label: str) -> str:
    """Jira labels cannot contain whitespace."""
    return re.sub(r"\s+", "-", label.strip())


@dataclass(frozen=True)
class IssuePlan:
    """Everything resolved for one record before any Jira write happens."""

    record: SourceRecord
    global_id: str
    issue_type: str
    status: str
    story_points: float
    fix_version_id: Optional[str] = None
    sprint_id: Optional[int] = None
    remote_link_title: str = ""


@dataclass
class UpsertOutcome:
    record: SourceRecord
    global_id: str
    jira_key: Optional[str] = None
    created: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class IssueUpsertEngine:
    """Apply fetched records to Jira one at a time, in fetch order.

    A failing record never aborts the batch. A throttled write is retried
    once after ``throttle_cooldown_seconds``; a missing status transition is not
    retried.
    """

    def __init__(
        self,
        jira: JiraClient,
        project: ProjectConfiguration,
        *,
        throttle_cooldown_seconds: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.jira = jira
        self.project = project
        self.throttle_cooldown_seconds = throttle_cooldown_seconds
        self._sleep = sleep
        self.stats = {"created": 0, "updated": 0, "transitioned": 0, "throttled": 0, "errors": 0}
        self._created_keys: Dict[str, str] = {}

    def plan(self, record: SourceRecord, lookups: LookupTables) -> IssuePlan:
        project = self.project
        board_item = record.board_item(project.github.board)

        fix_version_id = None
        if record.milestone is not None and record.milestone.title:
            fix_version_id = lookups.fix_versions.get(project.release_name(record.milestone.title))

        sprint_id = None
        if board_item is not None and board_item.sprint is not None:
            sprint_id = lookups.sprints.get(board_item.sprint.title)

        return IssuePlan(
            record=record,
            global_id=project.global_id(record.number),
            issue_type=project.issue_type_mapping.resolve_labels(record.labels),
            status=project.status_mapping.resolve_value(board_item.status if board_item else None),
            story_points=(board_item.story_points if board_item else None) or DEFAULT_STORY_POINTS,
            fix_version_id=fix_version_id,
            sprint_id=sprint_id,
            remote_link_title=remote_link_title(project.github.repo, record.number),
        )

    def build_fields(self, plan: IssuePlan) -> Dict[str, Any]:
        meta = self.jira.metadata
        fields: Dict[str, Any] = {
            "summary": plan.record.title,
            "project": {"key": self.project.jira.project_key},
            "issuetype": {"name": plan.issue_type},
            meta.story_points_field_id: plan.story_points,
            "components": [{"id": meta.component_id}],
            "description": markdown_to_jira(plan.record.body),
            "fixVersions": [{"id": plan.fix_version_id}] if plan.fix_version_id else [],
        }
        if self.project.copy_labels:
            fields["labels"] = [jira_label(label) for label in plan.record.labels if label.strip()]
        return fields

    def apply(self, plan: IssuePlan) -> UpsertOutcome:
        """Write one planned record to Jira; raises on failure."""
        key = self._created_keys.get(plan.global_id)
        created = key is not None
        if key is None:
            key = self.jira.find_issue_key_by_global_id(plan.global_id)
        if key is None:
            key = self.jira.create_issue(plan.record.title, plan.issue_type)
            # the remote link is not written yet, so a retry cannot find this issue by globalId
            self._created_keys[plan.global_id] = key
            created = True

        self.jira.upsert_remote_link(key, plan.global_id, plan.record.url, plan.remote_link_title)
        self._created_keys.pop(plan.global_id, None)
        self.jira.update_issue(key, self.build_fields(plan))

        current = self.jira.get_issue_status(key)
        if (current or "").casefold() != plan.status.casefold():
            self.transition_to(key, plan.status)
            self.stats["transitioned"] += 1
        else:
            logger.debug(f"Issue {key} already in status {plan.status}")

        if plan.sprint_id is not None:
            self.jira.add_issues_to_sprint(plan.sprint_id, [key])

        return UpsertOutcome(record=plan.record, global_id=plan.global_id, jira_key=key, created=created)

    def transition_to(self, issue_key: str, status: str) -> None:
        wanted = status.casefold()
        for transition in self.jira.get_transitions(issue_key):
            if transition.to_status.casefold() == wanted:
                logger.info(f"Moving {issue_key} to {status} via '{transition.name}'")
                self.jira.transition_issue(issue_key, transition.id)
                return
        raise MissingTransitionError(issue_key, status)

    def upsert(self, record: SourceRecord, lookups: LookupTables) -> UpsertOutcome:
        """Plan and apply one record, turning any failure into an error outcome."""
        global_id = self.project.global_id(record.number)
        try:
            plan = self.plan(record, lookups)
            logger.info(
                f"Create or update {record.url} as {global_id} "
                f"(type={plan.issue_type}, status={plan.status})"
            )
            try:
                outcome = self.apply(plan)
            except Exception as e:
                if not is_throttling_error(e):
                    raise
                self.stats["throttled"] += 1
                logger.warning(
                    f"Jira unauthorized/throttling rate limit reached, pausing for "
                    f"{self.throttle_cooldown_seconds}s before retrying {global_id}"
                )
                self._sleep(self.throttle_cooldown_seconds)
                outcome = self.apply(plan)
        except Exception as e:
            logger.error(f"Failed to sync issue {record.url} ({global_id}): {e}")
            self.stats["errors"] += 1
            return UpsertOutcome(record=record, global_id=global_id, error=str(e))

        self.stats["created" if outcome.created else "updated"] += 1
        return outcome

    def upsert_all(self, records: Sequence[SourceRecord], lookups: LookupTables) -> List[UpsertOutcome]:
        return [self.upsert(record, lookups) for record in records]
