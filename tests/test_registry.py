import threading
import time
import unittest

from filerelay.registry import (
    DuplicateRecordError,
    FileRegistry,
    RecordNotFoundError,
    UploadRecord,
    isoformat_utc,
)


def make_record(file_id, name="file.txt", *, size=10, service="gofile", upload_date=None, expiry=None):
    return UploadRecord(
        id=file_id,
        original_name=name,
        url=f"https://example.test/{file_id}",
        direct_url=f"https://example.test/{file_id}/raw",
        size=size,
        mime_type="text/plain",
        service=service,
        upload_date=time.time() if upload_date is None else upload_date,
        expiry=expiry,
    )


class FileRegistryTests(unittest.TestCase):
    def setUp(self):
        self.registry = FileRegistry()

    def test_insert_and_get(self):
        record = make_record("abc")
        self.registry.insert(record)
        self.assertIs(self.registry.get("abc"), record)
        self.assertIsNone(self.registry.get("missing"))
        self.assertEqual(len(self.registry), 1)

    def test_duplicate_id_rejected(self):
        self.registry.insert(make_record("abc"))
        with self.assertRaises(DuplicateRecordError):
            self.registry.insert(make_record("abc", "other.txt"))
        self.assertEqual(self.registry.get("abc").original_name, "file.txt")

    def test_list_sorts_newest_first(self):
        now = time.time()
        self.registry.insert(make_record("old", upload_date=now - 100))
        self.registry.insert(make_record("new", upload_date=now))
        self.registry.insert(make_record("middle", upload_date=now - 50))

        page = self.registry.list()
        self.assertEqual([record.id for record in page.records], ["new", "middle", "old"])

    def test_equal_timestamps_list_latest_insert_first(self):
        now = time.time()
        self.registry.insert(make_record("first", upload_date=now))
        self.registry.insert(make_record("second", upload_date=now))

        page = self.registry.list()
        self.assertEqual([record.id for record in page.records], ["second", "first"])

    def test_pagination_covers_every_record_once(self):
        now = time.time()
        for index in range(23):
            self.registry.insert(make_record(f"id{index}", upload_date=now - index))

        first = self.registry.list(page=1, limit=5)
        self.assertEqual(first.total, 23)
        self.assertEqual(first.total_pages, 5)

        seen = []
        for page_number in range(1, first.total_pages + 1):
            page = self.registry.list(page=page_number, limit=5)
            self.assertLessEqual(len(page.records), 5)
            seen.extend(record.id for record in page.records)

        self.assertEqual(seen, [f"id{index}" for index in range(23)])

    def test_filtered_pagination_covers_every_match_once(self):
        now = time.time()
        names = ["a.txt", "b.png", "c.txt", "d.jpg", "e.TXT", "f.txt", "g.gif", "h.txt", "i.txt"]
        for index, name in enumerate(names):
            self.registry.insert(make_record(f"id{index}", name, upload_date=now - index))

        first = self.registry.list(page=1, limit=2, search="txt")
        self.assertEqual(first.total, 6)
        self.assertEqual(first.total_pages, 3)

        seen = []
        for page_number in range(1, first.total_pages + 1):
            page = self.registry.list(page=page_number, limit=2, search="txt")
            self.assertEqual(page.total, 6)
            self.assertLessEqual(len(page.records), 2)
            seen.extend(record.id for record in page.records)

        self.assertEqual(seen, ["id0", "id2", "id4", "id5", "id7", "id8"])
        self.assertEqual(len(seen), len(set(seen)))
        self.assertEqual(self.registry.list(page=4, limit=2, search="txt").records, [])

    def test_page_beyond_end_is_empty(self):
        self.registry.insert(make_record("only"))
        page = self.registry.list(page=4, limit=10)
        self.assertEqual(page.records, [])
        self.assertEqual(page.total, 1)

    def test_empty_registry_has_one_page(self):
        page = self.registry.list(page=1, limit=20)
        self.assertEqual(page.total, 0)
        self.assertEqual(page.total_pages, 1)

    def test_invalid_page_values_clamp(self):
        self.registry.insert(make_record("only"))
        page = self.registry.list(page=0, limit=0)
        self.assertEqual(page.page, 1)
        self.assertEqual(page.limit, 1)
        self.assertEqual(len(page.records), 1)

    def test_search_filters_case_insensitively(self):
        self.registry.insert(make_record("a", "a.txt"))
        self.registry.insert(make_record("b", "b.png"))
        self.registry.insert(make_record("c", "NOTES.TXT"))

        page = self.registry.list(search="txt")
        self.assertEqual({record.original_name for record in page.records}, {"a.txt", "NOTES.TXT"})
        self.assertEqual(page.total, 2)

    def test_short_search_is_ignored(self):
        self.registry.insert(make_record("a", "a.txt"))
        self.registry.insert(make_record("b", "b.png"))

        page = self.registry.list(search="tx")
        self.assertEqual(page.total, 2)

    def test_search_term_is_not_stripped(self):
        self.registry.insert(make_record("a", "a.txt"))
        self.registry.insert(make_record("b", "my  a.txt"))

        padded = self.registry.list(search="  a")
        self.assertEqual([record.id for record in padded.records], ["b"])

        # two spaces and one letter still meet the minimum length
        self.assertEqual(padded.total, 1)
        self.assertEqual(self.registry.list(search=" a ").total, 0)

    def test_search_minimum_is_configurable(self):
        registry = FileRegistry(search_min_length=1)
        registry.insert(make_record("a", "a.txt"))
        registry.insert(make_record("b", "b.png"))

        page = registry.list(search="p")
        self.assertEqual([record.id for record in page.records], ["b"])

    def test_increment_download(self):
        self.registry.insert(make_record("abc"))
        self.assertEqual(self.registry.increment_download("abc"), 1)
        self.assertEqual(self.registry.increment_download("abc"), 2)
        with self.assertRaises(RecordNotFoundError):
            self.registry.increment_download("missing")

    def test_concurrent_increments_are_not_lost(self):
        self.registry.insert(make_record("abc"))
        threads = [
            threading.Thread(
                target=lambda: [self.registry.increment_download("abc") for _ in range(250)]
            )
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(self.registry.get("abc").downloads, 2000)

    def test_delete_removes_from_get_list_and_stats(self):
        self.registry.insert(make_record("keep", size=5))
        self.registry.insert(make_record("drop", size=7))

        removed = self.registry.delete("drop")
        self.assertEqual(removed.id, "drop")
        self.assertIsNone(self.registry.get("drop"))
        self.assertNotIn("drop", [record.id for record in self.registry.list().records])
        stats = self.registry.stats()
        self.assertEqual(stats.total_files, 1)
        self.assertEqual(stats.total_size, 5)

        with self.assertRaises(RecordNotFoundError):
            self.registry.delete("drop")

    def test_delete_log_strips_control_characters_from_name(self):
        self.registry.insert(make_record("abc", "evil\nfile_deleted file_id=forged.txt"))

        with self.assertLogs("filerelay.registry", level="INFO") as captured:
            self.registry.delete("abc")

        self.assertEqual(len(captured.output), 1)
        self.assertNotIn("\n", captured.output[0])
        self.assertIn("original_name=evilfile_deleted file_id=forged.txt", captured.output[0])

    def test_stats_breaks_down_by_service(self):
        self.registry.insert(make_record("a", size=10, service="gofile"))
        self.registry.insert(make_record("b", size=20, service="gofile"))
        self.registry.insert(make_record("c", size=5, service="file.io"))
        self.registry.increment_download("a")
        self.registry.increment_download("c")
        self.registry.increment_download("c")

        payload = self.registry.stats().to_payload()
        self.assertEqual(payload["totalFiles"], 3)
        self.assertEqual(payload["totalSize"], 35)
        self.assertEqual(payload["totalDownloads"], 3)
        self.assertEqual(
            payload["services"],
            {"gofile": {"count": 2, "size": 30}, "file.io": {"count": 1, "size": 5}},
        )

    def test_capacity_drops_oldest_inserted(self):
        registry = FileRegistry(capacity=3)
        for index in range(5):
            registry.insert(make_record(f"id{index}"))

        self.assertEqual(len(registry), 3)
        self.assertIsNone(registry.get("id0"))
        self.assertIsNone(registry.get("id1"))
        self.assertIsNotNone(registry.get("id4"))

    def test_remove_expired_only_touches_past_expiry(self):
        now = time.time()
        self.registry.insert(make_record("past", expiry=now - 1))
        self.registry.insert(make_record("future", expiry=now + 3600))
        self.registry.insert(make_record("durable"))

        removed = self.registry.remove_expired(now)
        self.assertEqual([record.id for record in removed], ["past"])
        self.assertEqual(self.registry.remove_expired(now), [])
        self.assertEqual(len(self.registry), 2)


class UploadRecordSerializationTests(unittest.TestCase):
    def test_summary_and_detail_shapes(self):
        record = make_record("abc", "a.txt", upload_date=0.0, expiry=3600.0)
        summary = record.to_summary()
        self.assertEqual(summary["name"], "a.txt")
        self.assertEqual(summary["uploadDate"], "1970-01-01T00:00:00Z")
        self.assertNotIn("mimeType", summary)

        detail = record.to_detail()
        self.assertEqual(detail["mimeType"], "text/plain")
        self.assertEqual(detail["expiry"], isoformat_utc(3600.0))

    def test_detail_without_expiry(self):
        self.assertIsNone(make_record("abc").to_detail()["expiry"])


if __name__ == "__main__":
    unittest.main()
