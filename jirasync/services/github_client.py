"""GitHub GraphQL read client"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from jirasync.exceptions import SourceFetchError
from jirasync.sync_config import BoardField, BoardFieldType

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


@dataclass(frozen=True)
class Milestone:
    id: str
    title: str
    due_on: Optional[str] = None
    closed: bool = False


@dataclass(frozen=True)
class IterationRef:
    """Iteration (sprint) value of a board item"""

    title: str
    start_date: Optional[str] = None
    duration: Optional[int] = None


@dataclass(frozen=True)
class BoardItem:
    """Membership of an issue in one project board, with the requested field values"""

    board_title: Optional[str]
    status: Optional[str] = None
    story_points: Optional[float] = None
    sprint: Optional[IterationRef] = None


@dataclass(frozen=True)
class SourceRecord:
    """One GitHub issue as returned by the search query"""

    url: str
    number: int
    updated_at: str
    state: str
    title: str
    body: str = ""
    labels: Tuple[str, ...] = ()
    milestone: Optional[Milestone] = None
    board_items: Tuple[BoardItem, ...] = ()

    def board_item(self, board_title: str) -> Optional[BoardItem]:
        for item in self.board_items:
            if item.board_title == board_title:
                return item
        return None

    @classmethod
    def from_graphql(cls, node: Dict[str, Any]) -> "SourceRecord":
        milestone = None
        m = node.get("milestone")
        if m and m.get("id"):
            milestone = Milestone(
                id=str(m["id"]),
                title=str(m.get("title") or ""),
                due_on=m.get("dueOn"),
                closed=bool(m.get("closed") or False),
            )

        labels = tuple(
            str(n["name"])
            for n in ((node.get("labels") or {}).get("nodes") or [])
            if n and n.get("name")
        )

        items: List[BoardItem] = []
        for edge in (node.get("projectItems") or {}).get("projects") or []:
            project = (edge or {}).get("project")
            if not project:
                continue
            items.append(_board_item_from_graphql(project))

        return cls(
            url=str(node.get("url") or ""),
            number=int(node["number"]),
            updated_at=str(node["updatedAt"]),
            state=str(node.get("state") or ""),
            title=str(node.get("title") or ""),
            body=node.get("body") or "",
            labels=labels,
            milestone=milestone,
            board_items=tuple(items),
        )


def _field_text(value: Any) -> Optional[str]:
    if not isinstance(value, dict):
        return None
    for key in ("name", "title", "value"):
        if value.get(key) is not None:
            return str(value[key])
    return None


def _board_item_from_graphql(project: Dict[str, Any]) -> BoardItem:
    story_points = None
    sp = project.get("storyPoints")
    if isinstance(sp, dict) and sp.get("value") is not None:
        try:
            story_points = float(sp["value"])
        except (TypeError, ValueError):
            story_points = None

    sprint = None
    it = project.get("sprint")
    if isinstance(it, dict) and it.get("title"):
        duration = it.get("duration")
        sprint = IterationRef(
            title=str(it["title"]),
            start_date=it.get("startDate"),
            duration=int(duration) if duration is not None else None,
        )

    return BoardItem(
        board_title=_field_text(project.get("title")),
        status=_field_text(project.get("status")),
        story_points=story_points,
        sprint=sprint,
    )


@dataclass(frozen=True)
class RateLimit:
    cost: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[str] = None


@dataclass(frozen=True)
class SearchPage:
    records: List[SourceRecord]
    end_cursor: Optional[str]
    has_next_page: bool
    rate_limit: Optional[RateLimit] = None


_FIELD_FRAGMENTS = {
    BoardFieldType.NUMBER: "... on ProjectV2ItemFieldNumberValue { value: number }",
    BoardFieldType.SINGLE_SELECT: "... on ProjectV2ItemFieldSingleSelectValue { name }",
    BoardFieldType.ITERATION: "... on ProjectV2ItemFieldIterationValue { duration startDate title }",
}


def build_issue_fragment(board_fields: Iterable[BoardField]) -> str:
    """GraphQL fragment selecting everything a SourceRecord needs."""
    field_queries = "\n".join(
        f"{f.alias}: fieldValueByName(name: {json.dumps(f.field_name)}) {{ {_FIELD_FRAGMENTS[f.type]} }}"
        for f in board_fields
    )
    return f"""
fragment SyncedIssueFields on Issue {{
  url
  number
  updatedAt
  body
  state
  title
  milestone {{ id dueOn closed title }}
  labels(first: 20) {{ nodes {{ name }} }}
  projectItems(first: 20, includeArchived: true) {{
    projects: edges {{
      project: node {{
        title: project {{ name: title }}
        {field_queries}
      }}
    }}
  }}
}}
"""


def build_search_query(board_fields: Iterable[BoardField]) -> str:
    return (
        """
query searchUpdatedIssues($searchQuery: String!, $pageSize: Int!, $cursorAfter: String) {
  rateLimit { cost remaining resetAt }
  search(query: $searchQuery, type: ISSUE, first: $pageSize, after: $cursorAfter) {
    pageInfo { endCursor hasNextPage }
    edges { node { ...SyncedIssueFields } }
  }
}
"""
        + build_issue_fragment(board_fields)
    )


def build_issue_query(board_fields: Iterable[BoardField]) -> str:
    return (
        """
query getIssue($owner: String!, $repo: String!, $number: Int!) {
  repository(owner: $owner, name: $repo) {
    issue(number: $number) { ...SyncedIssueFields }
  }
}
"""
        + build_issue_fragment(board_fields)
    )


def _is_not_found(error: Dict[str, Any], field: Optional[str]) -> bool:
    if not field or error.get("type") != "NOT_FOUND":
        return False
    path = error.get("path") or []
    return bool(path) and path[-1] == field


class GitHubClient:
    """Read-only GitHub GraphQL client"""

    def __init__(
        self,
        token: str,
        graphql_url: str = "https://api.github.com/graphql",
        *,
        session: Optional[requests.Session] = None,
        timeout_s: float = 30.0,
    ):
        self.graphql_url = graphql_url
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
                "User-Agent": "jirasync/1.0",
            }
        )

    @staticmethod
    def _should_retry(exc: Exception) -> bool:
        """Retry only transient transport failures."""
        if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
            return True
        response = getattr(exc, "response", None)
        return getattr(response, "status_code", None) in (429, 500, 502, 503, 504)

    def _with_retries(self, fn, *, max_attempts: int = 3, base_delay_s: float = 1.0):
        attempt = 1
        while True:
            try:
                return fn()
            except requests.RequestException as e:
                if attempt >= max_attempts or not self._should_retry(e):
                    raise
                delay = base_delay_s * (2 ** (attempt - 1))
                logger.warning(f"GitHub request failed (attempt {attempt}/{max_attempts}), retrying in {delay}s: {e}")
                time.sleep(delay)
                attempt += 1

    def execute(
        self, query: str, variables: Dict[str, Any], *, allow_missing: Optional[str] = None
    ) -> Dict[str, Any]:
        """Run a GraphQL query and return its ``data`` object.

        A NOT_FOUND error on the ``allow_missing`` field is not an error; the
        field is left null in the returned data.
        """

        def _post():
            response = self.session.post(
                self.graphql_url,
                json={"query": query, "variables": variables},
                timeout=self.timeout_s,
            )
            response.raise_for_status()
            return response.json()

        try:
            payload = self._with_retries(_post)
        except (requests.RequestException, ValueError) as e:
            raise SourceFetchError(f"GitHub GraphQL request failed: {e}") from e

        errors = [
            err for err in payload.get("errors") or [] if not _is_not_found(err, allow_missing)
        ]
        if errors:
            messages = "; ".join(str(err.get("message", err)) for err in errors)
            raise SourceFetchError(f"GitHub GraphQL errors: {messages}")
        data = payload.get("data")
        if data is None:
            raise SourceFetchError("GitHub GraphQL response carried no data")
        return data

    def search_issues_page(
        self,
        owner: str,
        repo: str,
        board_fields: Iterable[BoardField],
        updated_after: str,
        cursor: Optional[str] = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> SearchPage:
        """One page of issues updated strictly after ``updated_after``, oldest first."""
        search_query = f"repo:{owner}/{repo} is:issue sort:updated-asc updated:>{updated_after}"
        data = self.execute(
            build_search_query(board_fields),
            {"searchQuery": search_query, "pageSize": page_size, "cursorAfter": cursor},
        )

        rate = data.get("rateLimit") or {}
        rate_limit = RateLimit(
            cost=rate.get("cost"), remaining=rate.get("remaining"), reset_at=rate.get("resetAt")
        )
        search = data.get("search") or {}
        page_info = search.get("pageInfo") or {}
        records = [
            SourceRecord.from_graphql(edge["node"])
            for edge in search.get("edges") or []
            if edge and edge.get("node") and edge["node"].get("number") is not None
        ]
        return SearchPage(
            records=records,
            end_cursor=page_info.get("endCursor"),
            has_next_page=bool(page_info.get("hasNextPage")),
            rate_limit=rate_limit,
        )

    def get_issue(
        self, owner: str, repo: str, number: int, board_fields: Iterable[BoardField]
    ) -> Optional[SourceRecord]:
        """Read a single issue, or None if it no longer exists."""
        data = self.execute(
            build_issue_query(board_fields),
            {"owner": owner, "repo": repo, "number": int(number)},
            allow_missing="issue",
        )
        node = (data.get("repository") or {}).get("issue")
        if not node:
            return None
        return SourceRecord.from_graphql(node)
