"""Jira API client wrapper"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from jira import JIRA
from jira.exceptions import JIRAError
from requests.exceptions import RequestException

from jirasync.exceptions import ConfigurationError, ConnectivityError
from jirasync.services.governor import CallGovernor

logger = logging.getLogger(__name__)

STORY_POINTS_FIELD = "Story Points"
EPIC_NAME_FIELD = "Epic Name"
EPIC_ISSUE_TYPE = "Epic"
GITHUB_ICON_URL = "https://github.githubassets.com/favicons/favicon.svg"
SPRINT_PAGE_SIZE = 50


def is_throttling_error(exc: BaseException) -> bool:
    """Jira answers rate limiting with 429, and with a bare 401 when a token is throttled."""
    return isinstance(exc, JIRAError) and getattr(exc, "status_code", None) in (401, 429)


@dataclass(frozen=True)
class JiraMetadata:
    """Ids resolved from configured names when a project pass starts"""

    project_key: str
    component_id: str
    story_points_field_id: str
    epic_name_field_id: str
    board_id: int


@dataclass(frozen=True)
class Release:
    id: str
    name: str
    released: bool = False
    release_date: Optional[str] = None


@dataclass(frozen=True)
class Sprint:
    id: int
    name: str
    start_date: Optional[str] = None
    end_date: Optional[str] = None


@dataclass(frozen=True)
class Transition:
    id: str
    name: str
    to_status: str


class JiraClient:
    """Wrapper for the Jira operations the sync engine needs"""

    def __init__(
        self,
        host: str,
        token: str,
        *,
        governor: Optional[CallGovernor] = None,
        jira: Optional[JIRA] = None,
    ):
        """Create the underlying client; no request is made until ``check_connection``.

        With a governor, every outbound request is queued through it.
        """
        self.host = host
        self.governor = governor
        try:
            self.jira = jira or JIRA(server=host, token_auth=token, get_server_info=False)
        except (JIRAError, RequestException) as e:
            raise ConnectivityError(f"Cannot connect to Jira at {host}: {e}") from e
        self.metadata: Optional[JiraMetadata] = None

    def _call(self, fn, *args, **kwargs):
        if self.governor is None:
            return fn(*args, **kwargs)
        return self.governor.call(fn, *args, **kwargs)

    @staticmethod
    def _should_retry(exc: Exception) -> bool:
        """Best-effort retry predicate for transient Jira failures."""
        return getattr(exc, "status_code", None) in (500, 502, 503, 504)

    def _with_retries(self, fn, *, max_attempts: int = 3, base_delay_s: float = 0.5):
        """Run callable with small exponential backoff on transient errors."""
        attempt = 1
        while True:
            try:
                return fn()
            except JIRAError as e:
                if attempt >= max_attempts or not self._should_retry(e):
                    raise
                time.sleep(base_delay_s * (2 ** (attempt - 1)))
                attempt += 1

    def _require_metadata(self) -> JiraMetadata:
        if self.metadata is None:
            raise RuntimeError("Jira client not initialized, call initialize() first")
        return self.metadata

    # -- startup checks ------------------------------------------------------

    def check_connection(self) -> bool:
        try:
            self._call(self.jira.myself)
            return True
        except (JIRAError, RequestException) as e:
            logger.error(f"Jira connection error: {e}")
            return False

    def initialize(
        self,
        *,
        project_key: str,
        component: str,
        sprint_board: str,
        required_issue_types: Iterable[str] = (),
    ) -> JiraMetadata:
        """Check connectivity and resolve every configured name to its Jira id.

        Raises ConnectivityError when Jira cannot be reached and
        ConfigurationError when a named entity does not exist.
        """
        if not self.check_connection():
            raise ConnectivityError(f"Jira connection error ({self.host})")

        try:
            project = self._with_retries(lambda: self._call(self.jira.project, project_key))
        except JIRAError as e:
            if e.status_code == 404:
                raise ConfigurationError(f"Jira project {project_key} not found") from e
            raise ConnectivityError(f"Failed to get Jira project {project_key}: {e}") from e

        existing_types = tuple(
            t.name for t in (getattr(project, "issueTypes", None) or []) if getattr(t, "name", None)
        )
        for wanted in required_issue_types:
            if wanted not in existing_types:
                raise ConfigurationError(
                    f'Issue type "{wanted}" not found in Jira project {project_key}'
                )

        components = self._with_retries(lambda: self._call(self.jira.project_components, project_key))
        component_obj = next((c for c in components if c.name == component), None)
        if component_obj is None:
            raise ConfigurationError(f'Component "{component}" not found in Jira project {project_key}')

        fields = self._with_retries(lambda: self._call(self.jira.fields))
        by_name = {f.get("name"): f.get("id") for f in fields}
        story_points_id = by_name.get(STORY_POINTS_FIELD)
        if not story_points_id:
            raise ConfigurationError(f"{STORY_POINTS_FIELD} field cannot be found")
        epic_name_id = by_name.get(EPIC_NAME_FIELD)
        if not epic_name_id:
            raise ConfigurationError(f"{EPIC_NAME_FIELD} field cannot be found")

        boards = self._with_retries(lambda: self._call(self.jira.boards, projectKeyOrID=project_key, name=sprint_board))
        board = next((b for b in boards if b.name == sprint_board), None)
        if board is None:
            raise ConfigurationError(
                f"Board with name {sprint_board} not found for project {project_key}"
            )

        self.metadata = JiraMetadata(
            project_key=project_key,
            component_id=str(component_obj.id),
            story_points_field_id=story_points_id,
            epic_name_field_id=epic_name_id,
            board_id=int(board.id),
        )
        return self.metadata

    # -- releases (versions) -------------------------------------------------

    def get_releases(self) -> List[Release]:
        meta = self._require_metadata()
        versions = self._with_retries(lambda: self._call(self.jira.project_versions, meta.project_key))
        return [
            Release(
                id=str(v.id),
                name=getattr(v, "name", None) or str(v.id),
                released=bool(getattr(v, "released", False)),
                release_date=getattr(v, "releaseDate", None),
            )
            for v in versions
        ]

    def create_release(self, name: str, released: bool, release_date: Optional[str]) -> None:
        meta = self._require_metadata()
        self._call(
            self.jira.create_version,
            name,
            meta.project_key,
            releaseDate=release_date,
            released=released,
        )
        logger.info(f"Created release '{name}' in project {meta.project_key}")

    def update_release(
        self, release_id: str, name: str, released: bool, release_date: Optional[str]
    ) -> None:
        version = self._with_retries(lambda: self._call(self.jira.version, release_id))
        self._call(version.update, name=name, released=released, releaseDate=release_date)
        logger.info(f"Updated release '{name}' ({release_id})")

    # -- sprints -------------------------------------------------------------

    def get_sprints(self) -> List[Sprint]:
        meta = self._require_metadata()
        sprints: List[Sprint] = []
        start_at = 0
        while True:
            page = self._with_retries(
                lambda: self._call(
                    self.jira.sprints, meta.board_id, startAt=start_at, maxResults=SPRINT_PAGE_SIZE
                )
            )
            for s in page:
                sprints.append(
                    Sprint(
                        id=int(s.id),
                        name=getattr(s, "name", None) or str(s.id),
                        start_date=getattr(s, "startDate", None),
                        end_date=getattr(s, "endDate", None),
                    )
                )
            start_at += len(page)
            if getattr(page, "isLast", True) or len(page) == 0:
                return sprints

    def create_sprint(self, name: str, start_date: str, end_date: str) -> None:
        meta = self._require_metadata()
        self._call(self.jira.create_sprint, name, meta.board_id, startDate=start_date, endDate=end_date)
        logger.info(f"Created sprint '{name}' on board {meta.board_id}")

    def update_sprint(self, sprint_id: int, name: str, start_date: str, end_date: str) -> None:
        self._call(self.jira.update_sprint, sprint_id, name=name, startDate=start_date, endDate=end_date)
        logger.info(f"Updated sprint '{name}' ({sprint_id})")

    def add_issues_to_sprint(self, sprint_id: int, issue_keys: List[str]) -> None:
        self._call(self.jira.add_issues_to_sprint, sprint_id, issue_keys)

    # -- issues --------------------------------------------------------------

    def find_issue_key_by_global_id(self, global_id: str) -> Optional[str]:
        """Key of the issue carrying a remote link with this globalId, if any."""
        meta = self._require_metadata()
        escaped = global_id.replace('"', '\\"')
        jql = (
            f'issue in issuesWithRemoteLinksByGlobalId("{escaped}") '
            f'and project = "{meta.project_key}"'
        )
        issues = self._with_retries(
            lambda: self._call(self.jira.search_issues, jql, maxResults=1, fields="key")
        )
        return issues[0].key if issues else None

    def create_issue(self, summary: str, issue_type: str) -> str:
        meta = self._require_metadata()
        fields: Dict[str, Any] = {
            "summary": summary,
            "project": {"key": meta.project_key},
            "issuetype": {"name": issue_type},
        }
        if issue_type == EPIC_ISSUE_TYPE:
            fields[meta.epic_name_field_id] = summary
        issue = self._call(self.jira.create_issue, fields=fields)
        logger.info(f"Created issue {issue.key} in project {meta.project_key}")
        return issue.key

    def upsert_remote_link(self, issue_key: str, global_id: str, url: str, title: str) -> None:
        """Create the remote link, or replace the one already carrying ``global_id``."""
        self._call(
            self.jira.add_remote_link,
            issue_key,
            {
                "url": url,
                "title": title,
                "icon": {"url16x16": GITHUB_ICON_URL, "title": "GitHub"},
            },
            globalId=global_id,
        )

    def update_issue(self, issue_key: str, fields: Dict[str, Any]) -> None:
        issue = self._with_retries(lambda: self._call(self.jira.issue, issue_key))
        self._call(issue.update, fields=fields)
        logger.info(f"Updated issue {issue_key}")

    def get_issue_status(self, issue_key: str) -> Optional[str]:
        issue = self._with_retries(lambda: self._call(self.jira.issue, issue_key, fields="status"))
        status = getattr(getattr(issue, "fields", None), "status", None)
        return getattr(status, "name", None)

    def get_transitions(self, issue_key: str) -> List[Transition]:
        raw = self._with_retries(lambda: self._call(self.jira.transitions, issue_key))
        return [
            Transition(
                id=str(t.get("id")),
                name=str(t.get("name") or ""),
                to_status=str((t.get("to") or {}).get("name") or ""),
            )
            for t in raw or []
        ]

    def transition_issue(self, issue_key: str, transition_id: str) -> None:
        self._call(self.jira.transition_issue, issue_key, transition_id)
        logger.info(f"Transitioned issue {issue_key} with transition {transition_id}")
