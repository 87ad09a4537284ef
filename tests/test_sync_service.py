import os
import tempfile
import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


SYNC_YAML = """
githubProjects:
  - name: Planning
    storyPoints: {fieldName: Story Points, type: number}
    status: {fieldName: Status, type: singleSelect}
    sprint: {fieldName: Sprint, type: iteration}
statusTypeMappings:
  - name: status
    default: New
    mapping:
      - fromGithub: "🚧 In Progress"
        toJira: In Progress
issuesTypeMappings:
  - name: types
    default: Story
    mapping:
      - fromGithubLabel: kind/bug
        toJira: Bug
syncProjects:
  - name: Podman Desktop
    github: {owner: containers, repo: podman-desktop, project: Planning, afterDate: "2024-01-01"}
    useMapping: {issueType: types, statusType: status}
    jira: {projectKey: PD, component: Desktop, globalIdPrefix: PODMAN-DESKTOP, sprintBoard: PD Board}
  - name: Podman
    github: {owner: containers, repo: podman, project: Planning, afterDate: "2024-01-01"}
    useMapping: {issueType: types, statusType: status}
    jira: {projectKey: PODMAN, component: Engine, globalIdPrefix: PODMAN, sprintBoard: Podman Board}
"""


def _session():
    from jirasync.models import Base

    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _configurations(content=SYNC_YAML):
    from jirasync.sync_config import parse_sync_yaml, resolve_project_configurations

    return resolve_project_configurations(parse_sync_yaml(content))


def _record(repo, number, updated_at, labels=("kind/bug",), status="🚧 In Progress"):
    from jirasync.services.github_client import BoardItem, SourceRecord

    return SourceRecord(
        url=f"https://github.com/containers/{repo}/issues/{number}",
        number=number,
        updated_at=updated_at,
        state="OPEN",
        title=f"{repo} issue {number}",
        labels=tuple(labels),
        board_items=(BoardItem(board_title="Planning", status=status),),
    )


class _FakeGitHub:
    def __init__(self, records_by_repo=None, broken_repos=(), unreadable_numbers=()):
        self.records_by_repo = records_by_repo or {}
        self.broken_repos = set(broken_repos)
        self.unreadable_numbers = set(unreadable_numbers)
        self.single_reads = []

    def search_issues_page(self, owner, repo, board_fields, updated_after, cursor=None, page_size=50):
        from jirasync.exceptions import SourceFetchError
        from jirasync.services.github_client import SearchPage
        from jirasync.services.watermark import parse_timestamp

        if repo in self.broken_repos:
            raise SourceFetchError("GitHub GraphQL request failed: 502 Bad Gateway")
        after = parse_timestamp(updated_after)
        records = [r for r in self.records_by_repo.get(repo, []) if parse_timestamp(r.updated_at) > after]
        return SearchPage(records=records, end_cursor=None, has_next_page=False)

    def get_issue(self, owner, repo, number, board_fields):
        self.single_reads.append((repo, number))
        if number in self.unreadable_numbers:
            from jirasync.exceptions import SourceFetchError

            raise SourceFetchError("GitHub GraphQL request failed: 502 Bad Gateway")
        for record in self.records_by_repo.get(repo, []):
            if record.number == number:
                return record
        return None


class _FakeJiraServer:
    def __init__(self):
        self.issues = {}
        self.links = {}
        self.workflow = ["New", "In Progress"]
        self.init_errors = {}
        self.initialized = []

    def client(self):
        return _FakeJiraClient(self)


class _FakeJiraClient:
    def __init__(self, server):
        self.server = server
        self.metadata = None

    def initialize(self, *, project_key, component, sprint_board, required_issue_types=()):
        from jirasync.services.jira_client import JiraMetadata

        if project_key in self.server.init_errors:
            raise self.server.init_errors[project_key]
        self.server.initialized.append(project_key)
        self.metadata = JiraMetadata(
            project_key=project_key,
            component_id="2",
            story_points_field_id="customfield_10002",
            epic_name_field_id="customfield_10004",
            board_id=3,
        )
        return self.metadata

    def get_releases(self):
        return []

    def get_sprints(self):
        return []

    def find_issue_key_by_global_id(self, global_id):
        return self.server.links.get(global_id)

    def create_issue(self, summary, issue_type):
        key = f"{self.metadata.project_key}-{len(self.server.issues) + 1}"
        self.server.issues[key] = {"summary": summary, "type": issue_type, "status": "New"}
        return key

    def upsert_remote_link(self, issue_key, global_id, url, title):
        self.server.links[global_id] = issue_key

    def update_issue(self, issue_key, fields):
        self.server.issues[issue_key]["fields"] = fields

    def get_issue_status(self, issue_key):
        return self.server.issues[issue_key]["status"]

    def get_transitions(self, issue_key):
        from jirasync.services.jira_client import Transition

        return [Transition(id=s, name=s, to_status=s) for s in self.server.workflow]

    def transition_issue(self, issue_key, transition_id):
        self.server.issues[issue_key]["status"] = transition_id

    def add_issues_to_sprint(self, sprint_id, issue_keys):
        pass


def _service(db, github, server, retry_failed_records=True):
    from jirasync.services.sync_service import SyncService

    return SyncService(
        db,
        github_client=github,
        jira_client_factory=server.client,
        throttle_cooldown_seconds=0,
        retry_failed_records=retry_failed_records,
        sleep=lambda s: None,
    )


class SyncServiceRunTests(unittest.TestCase):
    def test_scenario_bug_in_progress_advances_watermark(self):
        from jirasync.models import SyncLog
        from jirasync.models.sync_log import SyncStatus

        db = _session()
        github = _FakeGitHub({"podman-desktop": [_record("podman-desktop", 1, "2024-01-05T00:00:00Z")]})
        server = _FakeJiraServer()

        result = _service(db, github, server).run(_configurations())

        self.assertTrue(result.success)
        desktop, podman = result.projects
        self.assertEqual(desktop.next_watermark, "2024-01-05T00:00:00Z")
        self.assertEqual(desktop.stats["created"], 1)
        self.assertEqual(podman.next_watermark, "2024-01-01")
        issue = server.issues["PD-1"]
        self.assertEqual(issue["type"], "Bug")
        self.assertEqual(issue["status"], "In Progress")
        self.assertEqual(
            result.state(),
            {
                "syncProjects": [
                    {"syncProjectName": "Podman Desktop", "afterDate": "2024-01-05T00:00:00Z"},
                    {"syncProjectName": "Podman", "afterDate": "2024-01-01"},
                ]
            },
        )
        statuses = [row.status for row in db.query(SyncLog).all()]
        self.assertEqual(statuses, [SyncStatus.SUCCESS, SyncStatus.SUCCESS])

    def test_unreachable_jira_fails_only_that_project(self):
        from jirasync.exceptions import ConnectivityError
        from jirasync.models.sync_log import SyncStatus

        db = _session()
        github = _FakeGitHub(
            {
                "podman-desktop": [_record("podman-desktop", 1, "2024-01-05T00:00:00Z")],
                "podman": [_record("podman", 7, "2024-01-06T00:00:00Z")],
            }
        )
        server = _FakeJiraServer()
        server.init_errors["PD"] = ConnectivityError("Jira connection error (https://jira)")

        result = _service(db, github, server).run(_configurations())

        self.assertFalse(result.success)
        desktop, podman = result.projects
        self.assertEqual(desktop.status, SyncStatus.FAILED)
        self.assertEqual(desktop.next_watermark, "2024-01-01")
        self.assertEqual(podman.status, SyncStatus.SUCCESS)
        self.assertEqual(podman.next_watermark, "2024-01-06T00:00:00Z")
        self.assertEqual(list(server.issues), ["PODMAN-1"])

    def test_fetch_failure_keeps_watermark_and_continues(self):
        from jirasync.models.sync_log import SyncStatus

        db = _session()
        github = _FakeGitHub(
            {"podman": [_record("podman", 7, "2024-01-06T00:00:00Z")]}, broken_repos={"podman-desktop"}
        )
        server = _FakeJiraServer()

        result = _service(db, github, server).run(_configurations())

        desktop, podman = result.projects
        self.assertEqual(desktop.status, SyncStatus.FAILED)
        self.assertIn("502", desktop.error)
        self.assertEqual(desktop.next_watermark, "2024-01-01")
        self.assertEqual(podman.status, SyncStatus.SUCCESS)

    def test_configuration_error_aborts_before_any_write(self):
        from jirasync.exceptions import ConfigurationError

        db = _session()
        github = _FakeGitHub({"podman-desktop": [_record("podman-desktop", 1, "2024-01-05T00:00:00Z")]})
        server = _FakeJiraServer()
        server.init_errors["PODMAN"] = ConfigurationError('Component "Engine" not found in Jira project PODMAN')

        with self.assertRaises(ConfigurationError):
            _service(db, github, server).run(_configurations())

        self.assertEqual(server.issues, {})


class FailedRecordCarryOverTests(unittest.TestCase):
    def test_failed_record_is_retried_on_next_run(self):
        from jirasync.models import FailedRecord

        db = _session()
        github = _FakeGitHub(
            {
                "podman-desktop": [
                    _record("podman-desktop", 1, "2024-01-03T00:00:00Z"),
                    _record("podman-desktop", 2, "2024-01-05T00:00:00Z", labels=(), status=None),
                ]
            }
        )
        server = _FakeJiraServer()
        server.workflow = ["New"]
        configurations = _configurations()

        first = _service(db, github, server).run(configurations)

        self.assertEqual(first.projects[0].next_watermark, "2024-01-05T00:00:00Z")
        [row] = db.query(FailedRecord).all()
        self.assertEqual(row.source_number, 1)
        self.assertEqual(row.global_id, "PODMAN-DESKTOP-1")
        self.assertEqual(row.attempts, 1)
        self.assertIn("In Progress", row.last_error)

        # The workflow gets fixed; the watermark has already moved past record 1.
        server.workflow = ["New", "In Progress"]
        from jirasync.services.watermark import WatermarkStore
        from jirasync.sync_config import parse_sync_yaml, resolve_project_configurations

        store = WatermarkStore.from_state(first.state())
        second = _service(db, github, server).run(
            resolve_project_configurations(parse_sync_yaml(SYNC_YAML), store)
        )

        self.assertTrue(second.success)
        self.assertEqual(second.projects[0].stats["fetched"], 0)
        self.assertEqual(second.projects[0].stats["carried_over"], 1)
        self.assertEqual(second.projects[0].next_watermark, "2024-01-05T00:00:00Z")
        self.assertEqual(github.single_reads, [("podman-desktop", 1)])
        self.assertEqual(db.query(FailedRecord).count(), 0)
        self.assertEqual(server.issues[server.links["PODMAN-DESKTOP-1"]]["status"], "In Progress")

    def test_repeated_failure_increments_attempts(self):
        from jirasync.models import FailedRecord

        db = _session()
        github = _FakeGitHub({"podman-desktop": [_record("podman-desktop", 1, "2024-01-03T00:00:00Z")]})
        server = _FakeJiraServer()
        server.workflow = ["New"]

        _service(db, github, server).run(_configurations())
        _service(db, github, server).run(_configurations())

        [row] = db.query(FailedRecord).all()
        self.assertEqual(row.attempts, 2)
        # Record 1 was in the fetched batch again, so it was not read individually.
        self.assertEqual(github.single_reads, [])

    def test_carry_over_disabled(self):
        from jirasync.models import FailedRecord, SyncLog
        from jirasync.models.sync_log import SyncStatus

        db = _session()
        github = _FakeGitHub({"podman-desktop": [_record("podman-desktop", 1, "2024-01-03T00:00:00Z")]})
        server = _FakeJiraServer()
        server.workflow = ["New"]

        _service(db, github, server, retry_failed_records=False).run(_configurations())

        self.assertEqual(db.query(FailedRecord).count(), 0)
        failed_logs = db.query(SyncLog).filter(SyncLog.status == SyncStatus.FAILED).all()
        self.assertEqual([log.global_id for log in failed_logs], ["PODMAN-DESKTOP-1"])

    def _run_twice(self, github, between=None):
        from jirasync.services.watermark import WatermarkStore
        from jirasync.sync_config import parse_sync_yaml, resolve_project_configurations

        db = _session()
        server = _FakeJiraServer()
        server.workflow = ["New"]
        first = _service(db, github, server).run(_configurations())
        if between:
            between()
        store = WatermarkStore.from_state(first.state())
        second = _service(db, github, server).run(
            resolve_project_configurations(parse_sync_yaml(SYNC_YAML), store)
        )
        return db, first, second

    def test_unreadable_failed_record_is_kept(self):
        from jirasync.models import FailedRecord

        github = _FakeGitHub({"podman-desktop": [_record("podman-desktop", 1, "2024-01-03T00:00:00Z")]})

        def break_reads():
            github.records_by_repo["podman-desktop"] = []
            github.unreadable_numbers.add(1)

        db, first, second = self._run_twice(github, break_reads)

        self.assertTrue(second.success)
        self.assertEqual(second.projects[0].stats["carried_over"], 0)
        self.assertEqual(github.single_reads, [("podman-desktop", 1)])
        [row] = db.query(FailedRecord).all()
        self.assertEqual(row.source_number, 1)
        self.assertEqual(row.attempts, 1)
        self.assertEqual(second.projects[0].next_watermark, first.projects[0].next_watermark)

    def test_failed_record_deleted_on_github_is_dropped(self):
        from jirasync.models import FailedRecord

        github = _FakeGitHub({"podman-desktop": [_record("podman-desktop", 1, "2024-01-03T00:00:00Z")]})

        def delete_issue():
            github.records_by_repo["podman-desktop"] = []

        db, first, second = self._run_twice(github, delete_issue)

        self.assertTrue(second.success)
        self.assertEqual(second.projects[0].stats["carried_over"], 0)
        self.assertEqual(github.single_reads, [("podman-desktop", 1)])
        self.assertEqual(db.query(FailedRecord).count(), 0)
        self.assertEqual(first.projects[0].next_watermark, "2024-01-03T00:00:00Z")
        self.assertEqual(second.projects[0].next_watermark, "2024-01-03T00:00:00Z")


class RunFromFilesTests(unittest.TestCase):
    def test_writes_state_file(self):
        from jirasync.config import Settings
        from jirasync.services.sync_service import run_from_files
        from jirasync.services.watermark import WatermarkStore

        db = _session()
        github = _FakeGitHub({"podman": [_record("podman", 7, "2024-01-06T00:00:00Z")]})
        server = _FakeJiraServer()

        with tempfile.TemporaryDirectory() as tmp:
            config_path = os.path.join(tmp, "sync.yaml")
            state_path = os.path.join(tmp, "sync-state.yaml")
            with open(config_path, "w", encoding="utf-8") as f:
                f.write(SYNC_YAML)
            with open(state_path, "w", encoding="utf-8") as f:
                f.write("syncProjects:\n  - syncProjectName: Podman Desktop\n    afterDate: '2024-01-04T00:00:00Z'\n")
            settings = Settings(sync_config_path=config_path, sync_state_path=state_path)

            result = run_from_files(db, settings, service=_service(db, github, server))
            saved = WatermarkStore.from_file(state_path).persisted

        self.assertTrue(result.success)
        self.assertEqual(
            saved,
            {"Podman Desktop": "2024-01-04T00:00:00Z", "Podman": "2024-01-06T00:00:00Z"},
        )

    def test_refuses_concurrent_pass(self):
        from jirasync.config import Settings
        from jirasync.exceptions import SyncInProgressError
        from jirasync.services import sync_service

        self.assertTrue(sync_service._run_lock.acquire(blocking=False))
        try:
            self.assertTrue(sync_service.is_sync_running())
            with self.assertRaises(SyncInProgressError):
                sync_service.run_from_files(_session(), Settings())
        finally:
            sync_service._run_lock.release()


if __name__ == "__main__":
    unittest.main()
