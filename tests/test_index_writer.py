import json
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from errors import IntegrityViolation
from index_writer import (
    IntegrityGuard,
    build_slim_entry,
    build_slim_index,
    collect_garbage,
    read_index,
    serialize,
    sort_records,
    write_index,
)


def record(record_id, sort_key=None, created_at=None, **extra):
    item = {"id": record_id}
    if sort_key is not None:
        item["sortKey"] = sort_key
    if created_at is not None:
        item["createdAt"] = created_at
    item.update(extra)
    return item


class TestSorting(unittest.TestCase):
    def test_sorts_by_sort_key_then_id(self):
        records = [record("c", 20), record("b", 10), record("a", 10)]
        self.assertEqual([item["id"] for item in sort_records(records)], ["a", "b", "c"])

    def test_missing_sort_key_falls_back_to_created_at(self):
        records = [
            record("late", 1672628645001),
            record("from-date", created_at="2023-01-02T03:04:05.000Z"),
            record("none"),
        ]
        self.assertEqual(
            [item["id"] for item in sort_records(records)], ["none", "from-date", "late"]
        )

    def test_sort_is_independent_of_input_order(self):
        records = [record(str(index), index % 3) for index in range(9)]
        self.assertEqual(sort_records(records), sort_records(list(reversed(records))))


class TestSlimIndex(unittest.TestCase):
    def test_slim_is_reverse_of_full_order(self):
        ordered = sort_records([record("a", 1), record("b", 2), record("c", 3)])
        self.assertEqual([item["id"] for item in build_slim_index(ordered)], ["c", "b", "a"])

    def test_slim_entry_shape_and_flags(self):
        full = record(
            "a",
            1,
            alt="Alt text",
            tags=["x"],
            w=800,
            h=600,
            cover={"src": "/assets/s/a.avif", "w": 800, "h": 600},
            links={"products": ["https://shop.example/a"], "related": []},
            title="not in slim",
        )

        entry = build_slim_entry(full)

        self.assertEqual(
            entry,
            {
                "id": "a",
                "alt": "Alt text",
                "src": "/assets/s/a.avif",
                "w": 800,
                "h": 600,
                "tags": ["x"],
                "hasProducts": True,
                "hasRelated": False,
            },
        )

    def test_slim_entry_without_cover_uses_sizes(self):
        full = record("a", 1, sizes={"s": {"webp": "/assets/s/a.webp"}}, w=10, h=5)
        entry = build_slim_entry(full)
        self.assertEqual(entry["src"], "/assets/s/a.webp")
        self.assertEqual((entry["w"], entry["h"]), (10, 5))
        self.assertFalse(entry["hasProducts"])


class TestWriting(unittest.TestCase):
    def test_serialize_is_deterministic_and_keeps_unicode(self):
        payload = [record("a", 1, title="ねこ")]
        text = serialize(payload)
        self.assertEqual(text, serialize(payload))
        self.assertIn("ねこ", text)
        self.assertTrue(text.endswith("]\n"))
        self.assertIn('\n  {\n    "id": "a"', text)

    def test_write_then_read(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "data" / "images.generated.json"
            write_index(path, [record("a", 1)])
            self.assertEqual(read_index(path), [record("a", 1)])
            self.assertEqual([p.name for p in path.parent.iterdir()], ["images.generated.json"])

    def test_failed_write_leaves_previous_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "images.generated.json"
            write_index(path, [record("a", 1)])
            before = path.read_bytes()

            with mock.patch("index_writer.serialize", side_effect=RuntimeError("disk full")):
                with self.assertRaises(RuntimeError):
                    write_index(path, [record("b", 2)])

            self.assertEqual(path.read_bytes(), before)
            self.assertEqual([p.name for p in path.parent.iterdir()], ["images.generated.json"])

    def test_read_missing_index_is_empty(self):
        self.assertEqual(read_index(Path("/nonexistent/images.json")), [])

    def test_read_invalid_index_raises(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "images.json"
            path.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ValueError):
                read_index(path)
            path.write_text(json.dumps({"id": "a"}), encoding="utf-8")
            with self.assertRaises(ValueError):
                read_index(path)


class TestGarbageCollection(unittest.TestCase):
    def test_removes_only_unreferenced_variants(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            output_dir = Path(temp_dir)
            for tier in ("s", "l2x"):
                (output_dir / tier).mkdir()
                (output_dir / tier / "keep.webp").write_bytes(b"k")
                (output_dir / tier / "orphan.webp").write_bytes(b"o")
            (output_dir / "other").mkdir()
            (output_dir / "other" / "orphan.webp").write_bytes(b"o")

            removed = collect_garbage(output_dir, {"keep"})

            self.assertEqual(
                sorted(path.relative_to(output_dir).as_posix() for path in removed),
                ["l2x/orphan.webp", "s/orphan.webp"],
            )
            self.assertTrue((output_dir / "s" / "keep.webp").exists())
            self.assertTrue((output_dir / "other" / "orphan.webp").exists())


class TestIntegrityGuard(unittest.TestCase):
    def setUp(self):
        self._temp = tempfile.TemporaryDirectory()
        self.path = Path(self._temp.name) / "images.json"

    def tearDown(self):
        self._temp.cleanup()

    def test_unchanged_file_passes(self):
        self.path.write_text("[]\n", encoding="utf-8")
        guard = IntegrityGuard(self.path)
        guard.snapshot()
        guard.verify()

    def test_modified_file_raises(self):
        self.path.write_text("[]\n", encoding="utf-8")
        guard = IntegrityGuard(self.path)
        guard.snapshot()
        self.path.write_text('[{"id": "x"}]\n', encoding="utf-8")
        with self.assertRaises(IntegrityViolation):
            guard.verify()

    def test_deleted_file_raises(self):
        self.path.write_text("[]\n", encoding="utf-8")
        guard = IntegrityGuard(self.path)
        guard.snapshot()
        self.path.unlink()
        with self.assertRaises(IntegrityViolation):
            guard.verify()

    def test_absent_file_is_not_guarded(self):
        guard = IntegrityGuard(self.path)
        self.assertIsNone(guard.snapshot())
        guard.verify()


if __name__ == "__main__":
    unittest.main()
