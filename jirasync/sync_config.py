"""sync.yaml schema and per-project configuration resolution"""

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from jirasync.exceptions import ConfigurationError
from jirasync.services.mapping import MappingTable
from jirasync.services.watermark import WatermarkStore

logger = logging.getLogger(__name__)


class BoardFieldType(str, Enum):
    """Kinds of GitHub project (v2) fields we know how to query"""

    NUMBER = "number"
    SINGLE_SELECT = "singleSelect"
    ITERATION = "iteration"


# -- YAML document ---------------------------------------------------------


class BoardFieldDefinition(BaseModel):
    field_name: str = Field(alias="fieldName")
    type: str

    class Config:
        populate_by_name = True


class GitHubBoardDefinition(BaseModel):
    name: str
    story_points: Optional[BoardFieldDefinition] = Field(default=None, alias="storyPoints")
    status: Optional[BoardFieldDefinition] = None
    sprint: Optional[BoardFieldDefinition] = None

    class Config:
        populate_by_name = True


class StatusMappingRule(BaseModel):
    from_github: str = Field(alias="fromGithub")
    to_jira: str = Field(alias="toJira")

    class Config:
        populate_by_name = True


class IssueTypeMappingRule(BaseModel):
    from_github_label: str = Field(alias="fromGithubLabel")
    to_jira: str = Field(alias="toJira")

    class Config:
        populate_by_name = True


class StatusMappingDefinition(BaseModel):
    name: str
    default: Optional[str] = None
    case_sensitive: bool = Field(default=True, alias="caseSensitive")
    mapping: List[StatusMappingRule] = []

    class Config:
        populate_by_name = True


class IssueTypeMappingDefinition(BaseModel):
    name: str
    default: Optional[str] = None
    case_sensitive: bool = Field(default=True, alias="caseSensitive")
    mapping: List[IssueTypeMappingRule] = []

    class Config:
        populate_by_name = True


class SyncProjectGitHub(BaseModel):
    owner: str
    repo: str
    project: str
    after_date: str = Field(alias="afterDate")

    class Config:
        populate_by_name = True

    @field_validator("after_date", mode="before")
    @classmethod
    def _date_as_text(cls, value):
        # YAML turns unquoted timestamps into date/datetime objects.
        if isinstance(value, date):
            return value.isoformat()
        return value


class SyncProjectMappingRefs(BaseModel):
    issue_type: str = Field(alias="issueType")
    status_type: str = Field(alias="statusType")

    class Config:
        populate_by_name = True


class SyncProjectJira(BaseModel):
    project_key: str = Field(alias="projectKey")
    component: str
    global_id_prefix: str = Field(alias="globalIdPrefix")
    sprint_board: str = Field(alias="sprintBoard")

    class Config:
        populate_by_name = True


class SyncProjectDefinition(BaseModel):
    name: str
    github: SyncProjectGitHub
    use_mapping: SyncProjectMappingRefs = Field(alias="useMapping")
    jira: SyncProjectJira
    max_batch_size: int = Field(default=0, alias="maxBatchSize")
    copy_labels: bool = Field(default=False, alias="copyLabels")

    class Config:
        populate_by_name = True


class SyncYaml(BaseModel):
    """Top-level sync.yaml document"""

    github_projects: List[GitHubBoardDefinition] = Field(default=[], alias="githubProjects")
    status_type_mappings: List[StatusMappingDefinition] = Field(
        default=[], alias="statusTypeMappings"
    )
    issues_type_mappings: List[IssueTypeMappingDefinition] = Field(
        default=[], alias="issuesTypeMappings"
    )
    sync_projects: List[SyncProjectDefinition] = Field(default=[], alias="syncProjects")

    class Config:
        populate_by_name = True


def load_sync_yaml(path: str) -> SyncYaml:
    """Read and validate sync.yaml"""
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read sync configuration {path}: {e}") from e
    return parse_sync_yaml(content, source=path)


def parse_sync_yaml(content: str, *, source: str = "<string>") -> SyncYaml:
    try:
        raw = yaml.safe_load(content) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {source}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{source} must contain a mapping at the top level")
    try:
        return SyncYaml.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid sync configuration in {source}: {e}") from e


# -- Resolved configuration ------------------------------------------------


@dataclass(frozen=True)
class BoardField:
    """One board field requested from the source, under a fixed alias."""

    alias: str
    field_name: str
    type: BoardFieldType


@dataclass(frozen=True)
class GitHubProjectRef:
    owner: str
    repo: str
    board: str
    start_date: str
    board_fields: Tuple[BoardField, ...] = ()


@dataclass(frozen=True)
class JiraProjectRef:
    project_key: str
    component: str
    global_id_prefix: str
    sprint_board: str


@dataclass(frozen=True)
class ProjectConfiguration:
    """Everything needed to sync one GitHub repository into one Jira project."""

    name: str
    github: GitHubProjectRef
    jira: JiraProjectRef
    issue_type_mapping: MappingTable
    status_mapping: MappingTable
    max_batch_size: int = 0
    copy_labels: bool = False

    def global_id(self, number: int) -> str:
        return f"{self.jira.global_id_prefix}-{number}"

    def release_name(self, milestone_title: str) -> str:
        """Releases are namespaced by project so several repos can share a Jira project."""
        return f"{self.name} {milestone_title}"


def _field_type(value: str) -> BoardFieldType:
    try:
        return BoardFieldType(value)
    except ValueError:
        raise ConfigurationError(f"Unknown board field type '{value}'") from None


def _board_fields(board: Optional[GitHubBoardDefinition]) -> Tuple[BoardField, ...]:
    if board is None:
        return ()
    fields = []
    for alias, definition in (
        ("storyPoints", board.story_points),
        ("status", board.status),
        ("sprint", board.sprint),
    ):
        if definition is not None:
            fields.append(
                BoardField(
                    alias=alias,
                    field_name=definition.field_name,
                    type=_field_type(definition.type),
                )
            )
    return tuple(fields)


def resolve_project_configurations(
    sync_yaml: SyncYaml, watermarks: Optional[WatermarkStore] = None
) -> List[ProjectConfiguration]:
    """Merge static config with persisted watermarks into ProjectConfiguration objects.

    Raises ConfigurationError for any missing mapping table or default, so that
    a broken configuration is reported before anything is synchronized.
    """
    watermarks = watermarks or WatermarkStore()
    boards = {b.name: b for b in sync_yaml.github_projects}
    status_tables = {m.name: m for m in sync_yaml.status_type_mappings}
    issue_type_tables = {m.name: m for m in sync_yaml.issues_type_mappings}

    configurations: List[ProjectConfiguration] = []
    seen_names = set()
    for project in sync_yaml.sync_projects:
        if project.name in seen_names:
            raise ConfigurationError(f"Duplicate sync project name '{project.name}'")
        seen_names.add(project.name)

        issue_def = issue_type_tables.get(project.use_mapping.issue_type)
        if issue_def is None:
            raise ConfigurationError(f"Issue type mapping not found for {project.name}")
        status_def = status_tables.get(project.use_mapping.status_type)
        if status_def is None:
            raise ConfigurationError(f"Status type mapping not found for {project.name}")
        if not status_def.default:
            raise ConfigurationError(f"Default status type not found for {project.name}")
        if not issue_def.default:
            raise ConfigurationError(f"Default issue type not found for {project.name}")

        board = boards.get(project.github.project)
        if board is None:
            raise ConfigurationError(
                f"GitHub project '{project.github.project}' not found in githubProjects for {project.name}"
            )

        if project.max_batch_size < 0:
            raise ConfigurationError(f"maxBatchSize must not be negative for {project.name}")

        start_date = watermarks.load(project.name, project.github.after_date)
        if start_date != project.github.after_date:
            logger.info(
                f"Overriding afterDate for project {project.name} "
                f"from {project.github.after_date} to {start_date}"
            )

        configurations.append(
            ProjectConfiguration(
                name=project.name,
                github=GitHubProjectRef(
                    owner=project.github.owner,
                    repo=project.github.repo,
                    board=project.github.project,
                    start_date=str(start_date),
                    board_fields=_board_fields(board),
                ),
                jira=JiraProjectRef(
                    project_key=project.jira.project_key,
                    component=project.jira.component,
                    global_id_prefix=project.jira.global_id_prefix,
                    sprint_board=project.jira.sprint_board,
                ),
                issue_type_mapping=MappingTable.from_pairs(
                    issue_def.name,
                    ((r.from_github_label, r.to_jira) for r in issue_def.mapping),
                    issue_def.default,
                    case_sensitive=issue_def.case_sensitive,
                ),
                status_mapping=MappingTable.from_pairs(
                    status_def.name,
                    ((r.from_github, r.to_jira) for r in status_def.mapping),
                    status_def.default,
                    case_sensitive=status_def.case_sensitive,
                ),
                max_batch_size=project.max_batch_size,
                copy_labels=project.copy_labels,
            )
        )
    return configurations
