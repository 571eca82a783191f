import unittest

from ghactivity.services.snapshot import resolve_issue_from_payload
from ghactivity.services.status_resolver import (
    StatusEvent,
    extract_project_status_events,
    latest_status_at_or_before,
    map_project_status,
    normalize_events,
    resolve_issue_status,
    resolve_work_timestamps,
    status_entry_times,
    was_tracked_by_project,
)

T1 = "2024-04-01T09:00:00Z"
T2 = "2024-04-02T09:00:00Z"
T3 = "2024-04-03T09:00:00Z"
T4 = "2024-04-04T09:00:00Z"


def _events(*pairs: tuple[str, str]) -> list[StatusEvent]:
    return [StatusEvent(status, at) for status, at in pairs]


class ResolveIssueStatusTests(unittest.TestCase):
    def test_latest_project_event_wins_even_on_regression(self) -> None:
        info = resolve_issue_status(_events(("todo", T1), ("in_progress", T2), ("todo", T3)), [])
        self.assertEqual(info.display_status, "todo")
        self.assertEqual(info.todo_status_at, T3)
        self.assertEqual(info.source, "todo_project")
        # Only in_progress/done/pending lock the issue to the board.
        self.assertFalse(info.locked)

    def test_activity_only_timeline(self) -> None:
        info = resolve_issue_status([], _events(("todo", T1), ("in_progress", T2), ("done", T3)))
        self.assertEqual(info.display_status, "done")
        self.assertEqual(info.source, "activity")
        self.assertFalse(info.locked)
        self.assertIsNone(info.todo_status)
        self.assertEqual(info.timeline_source, "activity")

    def test_locked_board_status_overrides_activity(self) -> None:
        info = resolve_issue_status(_events(("in_progress", T2)), _events(("done", T3)))
        self.assertTrue(info.locked)
        self.assertEqual(info.display_status, "in_progress")
        self.assertEqual(info.source, "todo_project")
        self.assertEqual(info.timeline_source, "todo_project")

    def test_unlocked_board_status_yields_to_activity(self) -> None:
        info = resolve_issue_status(_events(("todo", T1)), _events(("in_progress", T2)))
        self.assertFalse(info.locked)
        self.assertEqual(info.display_status, "in_progress")
        self.assertEqual(info.source, "activity")

    def test_tracked_without_status_is_no_status(self) -> None:
        info = resolve_issue_status([], [], tracked=True)
        self.assertEqual(info.todo_status, "no_status")
        self.assertEqual(info.display_status, "no_status")
        self.assertEqual(info.source, "todo_project")

    def test_empty_timeline(self) -> None:
        info = resolve_issue_status([], [])
        self.assertEqual(info.display_status, "no_status")
        self.assertEqual(info.source, "none")
        self.assertEqual(info.timeline_source, "none")
        self.assertEqual(info.timeline, ())


class WorkTimestampTests(unittest.TestCase):
    def test_in_progress_then_done(self) -> None:
        info = resolve_issue_status([], _events(("in_progress", T1), ("done", T2)))
        work = resolve_work_timestamps(info)
        self.assertEqual(work.started_at, T1)
        self.assertEqual(work.completed_at, T2)

    def test_regression_to_backlog_voids_timing(self) -> None:
        info = resolve_issue_status([], _events(("in_progress", T1), ("todo", T2)))
        work = resolve_work_timestamps(info)
        self.assertIsNone(work.started_at)
        self.assertIsNone(work.completed_at)

    def test_reentering_progress_clears_completion(self) -> None:
        info = resolve_issue_status([], _events(("in_progress", T1), ("done", T2), ("in_progress", T3)))
        work = resolve_work_timestamps(info)
        self.assertEqual(work.started_at, T3)
        self.assertIsNone(work.completed_at)

    def test_done_without_start_is_ignored(self) -> None:
        info = resolve_issue_status([], _events(("done", T1)))
        work = resolve_work_timestamps(info)
        self.assertIsNone(work.started_at)
        self.assertIsNone(work.completed_at)
        self.assertEqual(resolve_work_timestamps(None).started_at, None)

    def test_entry_times_and_point_in_time_status(self) -> None:
        events = _events(("todo", T1), ("in_progress", T2), ("done", T4))
        times = status_entry_times(events)
        self.assertEqual(times["in_progress"], T2)
        self.assertEqual(times["done"], T4)
        self.assertIsNone(times["canceled"])
        self.assertIsNone(latest_status_at_or_before(events, "2024-03-01T00:00:00Z"))
        self.assertEqual(latest_status_at_or_before(events, T2), "in_progress")
        self.assertEqual(latest_status_at_or_before(events, T3), "in_progress")


class ProjectPayloadTests(unittest.TestCase):
    def test_board_column_names_are_mapped(self) -> None:
        self.assertEqual(map_project_status("In Progress"), "in_progress")
        self.assertEqual(map_project_status("To Do"), "todo")
        self.assertEqual(map_project_status("Done"), "done")
        self.assertEqual(map_project_status("Pending review"), "pending")
        self.assertEqual(map_project_status("Cancelled"), "canceled")
        self.assertEqual(map_project_status("Icebox"), "no_status")
        self.assertEqual(map_project_status(None), "no_status")

    def test_history_is_filtered_by_project_and_malformed_entries_skipped(self) -> None:
        payload = {
            "projectStatusHistory": [
                {"projectTitle": "To-Do", "status": "In Progress", "occurredAt": T2},
                {"projectTitle": "Other", "status": "Done", "occurredAt": T3},
                {"projectTitle": {"title": "to-do"}, "status": "Todo", "occurredAt": T1},
                {"projectTitle": "To-Do", "status": "Done"},
                {"projectTitle": "To-Do", "occurredAt": T4},
                "garbage",
            ],
        }
        events = extract_project_status_events(payload, " to-do ")
        self.assertEqual(events, _events(("todo", T1), ("in_progress", T2)))
        self.assertEqual(extract_project_status_events(payload, None), [])
        self.assertEqual(extract_project_status_events("not a dict", "To-Do"), [])

    def test_tracked_by_project_items(self) -> None:
        payload = {"projectItems": {"nodes": [{"project": {"title": "To-Do"}}]}}
        self.assertTrue(was_tracked_by_project(payload, "to-do"))
        self.assertFalse(was_tracked_by_project(payload, "Roadmap"))
        self.assertFalse(was_tracked_by_project({}, "to-do"))

    def test_activity_rows_are_normalized_and_sorted(self) -> None:
        rows = [
            {"status": "done", "occurred_at": T3},
            {"status": "bogus", "occurred_at": T1},
            {"status": "in_progress", "occurred_at": None},
            {"status": "in_progress", "occurredAt": "2024-04-01T18:00:00+09:00"},
        ]
        self.assertEqual(normalize_events(rows), _events(("in_progress", T1), ("done", T3)))

    def test_payload_resolution_combines_both_streams(self) -> None:
        payload = {
            "projectItems": {"nodes": [{"project": {"title": "To-Do"}}]},
            "projectStatusHistory": [{"projectTitle": "To-Do", "status": "Todo", "occurredAt": T1}],
        }
        info = resolve_issue_from_payload(payload, [{"status": "in_progress", "occurred_at": T2}], "To-Do")
        self.assertEqual(info.todo_status, "todo")
        self.assertEqual(info.activity_status, "in_progress")
        self.assertEqual(info.display_status, "in_progress")
        self.assertEqual(info.source, "activity")


if __name__ == "__main__":
    unittest.main()
