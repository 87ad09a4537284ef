import os
import tempfile
import unittest
from datetime import date, datetime, timezone


class WatermarkAdvanceTests(unittest.TestCase):
    def test_empty_fetch_keeps_prior_watermark(self):
        from jirasync.services.watermark import WatermarkStore

        self.assertEqual(WatermarkStore.advance("2024-01-01", []), "2024-01-01")

    def test_advances_to_latest_updated_at(self):
        from jirasync.services.watermark import WatermarkStore

        result = WatermarkStore.advance(
            "2024-01-01",
            ["2024-01-03T10:00:00Z", "2024-01-05T00:00:00Z", "2024-01-04T23:59:59Z"],
        )

        self.assertEqual(result, "2024-01-05T00:00:00Z")

    def test_never_moves_backwards(self):
        from jirasync.services.watermark import WatermarkStore

        result = WatermarkStore.advance("2024-02-01T00:00:00Z", ["2024-01-15T00:00:00Z"])

        self.assertEqual(result, "2024-02-01T00:00:00Z")

    def test_compares_instants_not_strings(self):
        from jirasync.services.watermark import WatermarkStore

        result = WatermarkStore.advance("2024-01-01T12:00:00+02:00", ["2024-01-01T11:00:00Z"])

        self.assertEqual(result, "2024-01-01T11:00:00Z")


class WatermarkStoreTests(unittest.TestCase):
    def test_persisted_value_overrides_configured_start(self):
        from jirasync.services.watermark import WatermarkStore

        store = WatermarkStore.from_state(
            {"syncProjects": [{"syncProjectName": "Podman Desktop", "afterDate": "2024-03-01T08:00:00Z"}]}
        )

        self.assertEqual(store.load("Podman Desktop", "2024-01-01"), "2024-03-01T08:00:00Z")
        self.assertEqual(store.load("Other", "2024-01-01"), "2024-01-01")

    def test_yaml_dates_are_kept_as_text(self):
        from jirasync.services.watermark import WatermarkStore

        store = WatermarkStore.from_state(
            {"syncProjects": [{"syncProjectName": "A", "afterDate": date(2024, 1, 2)}]}
        )

        self.assertEqual(store.load("A", "2023-01-01"), "2024-01-02")

    def test_merge_and_save_round_trip_through_file(self):
        from jirasync.services.watermark import ProjectWatermark, WatermarkStore

        state = WatermarkStore.merge(
            [
                ProjectWatermark("A", "2024-01-05T00:00:00Z"),
                ProjectWatermark("B", "2024-01-01"),
            ]
        )
        self.assertEqual(
            state,
            {
                "syncProjects": [
                    {"syncProjectName": "A", "afterDate": "2024-01-05T00:00:00Z"},
                    {"syncProjectName": "B", "afterDate": "2024-01-01"},
                ]
            },
        )

        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "sync-state.yaml")
            WatermarkStore.save(path, state)
            loaded = WatermarkStore.from_file(path)

        self.assertEqual(loaded.persisted, {"A": "2024-01-05T00:00:00Z", "B": "2024-01-01"})

    def test_missing_state_file_means_no_overrides(self):
        from jirasync.services.watermark import WatermarkStore

        with tempfile.TemporaryDirectory() as tmp:
            store = WatermarkStore.from_file(os.path.join(tmp, "missing.yaml"))

        self.assertEqual(store.persisted, {})

    def test_parse_and_format_timestamps(self):
        from jirasync.services.watermark import format_search_timestamp, parse_timestamp

        self.assertEqual(parse_timestamp("2024-01-05"), datetime(2024, 1, 5, tzinfo=timezone.utc))
        self.assertEqual(format_search_timestamp("2024-01-05"), "2024-01-05T00:00:00Z")
        self.assertEqual(format_search_timestamp("2024-01-05T10:11:12+01:00"), "2024-01-05T09:11:12Z")


if __name__ == "__main__":
    unittest.main()
