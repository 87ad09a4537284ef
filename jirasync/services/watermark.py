"""Per-project watermarks (last observed source update time)"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

import yaml

from jirasync.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO8601 date or timestamp into an aware UTC datetime.

    Bare dates and naive timestamps are taken as UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_search_timestamp(value: str) -> str:
    """Render a watermark the way the GitHub search qualifier expects it."""
    return parse_timestamp(value).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class ProjectWatermark:
    """Result of one project pass, as handed to persistence."""

    name: str
    next_watermark: str


class WatermarkStore:
    """Holds persisted watermarks and produces the state written after a run.

    The persisted state is a plain name -> timestamp mapping stored as
    ``syncProjects: [{syncProjectName, afterDate}]`` and rewritten wholesale.
    """

    def __init__(self, persisted: Optional[Dict[str, str]] = None):
        self._persisted: Dict[str, str] = dict(persisted or {})

    @property
    def persisted(self) -> Dict[str, str]:
        return dict(self._persisted)

    @classmethod
    def from_state(cls, state: Optional[Dict[str, Any]]) -> "WatermarkStore":
        persisted: Dict[str, str] = {}
        for entry in (state or {}).get("syncProjects") or []:
            name = entry.get("syncProjectName")
            after = entry.get("afterDate")
            if not name or after is None:
                logger.warning(f"Ignoring malformed sync state entry: {entry}")
                continue
            if isinstance(after, date):
                after = after.isoformat()
            persisted[str(name)] = str(after)
        return cls(persisted)

    @classmethod
    def from_file(cls, path: str) -> "WatermarkStore":
        """Load the state file if present; a missing file means no overrides."""
        p = Path(path)
        if not p.exists():
            logger.info(f"No sync state found at {path}, using configured start dates")
            return cls()
        try:
            state = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read sync state {path}: {e}") from e
        if not isinstance(state, dict):
            raise ConfigurationError(f"Sync state {path} must contain a mapping")
        return cls.from_state(state)

    def load(self, project_name: str, configured_start: str) -> str:
        """Configured start time, overridden by a persisted value when one exists."""
        return self._persisted.get(project_name) or configured_start

    @staticmethod
    def advance(prior: str, updated_at_values: Iterable[str]) -> str:
        """Latest ``updatedAt`` among fetched records, never earlier than ``prior``.

        An empty fetch leaves the watermark untouched.
        """
        best = prior
        best_dt = parse_timestamp(prior)
        for value in updated_at_values:
            dt = parse_timestamp(value)
            if dt > best_dt:
                best, best_dt = value, dt
        return best

    @staticmethod
    def merge(results: Sequence[ProjectWatermark]) -> Dict[str, List[Dict[str, str]]]:
        """Build the persistable state from per-project end-of-run watermarks."""
        return {
            "syncProjects": [
                {"syncProjectName": r.name, "afterDate": r.next_watermark} for r in results
            ]
        }

    @staticmethod
    def save(path: str, state: Dict[str, Any]) -> None:
        content = yaml.safe_dump(state, sort_keys=False, allow_unicode=True, width=10_000)
        Path(path).write_text(content, encoding="utf-8")
        logger.info(f"Wrote sync state for {len(state.get('syncProjects', []))} project(s) to {path}")
