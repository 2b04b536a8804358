import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from PIL import Image

import build_images
import imaging
from metadata import is_ulid_like


def make_image(path: Path, size, color=(90, 140, 200)) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path)
    return path


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self._temp = tempfile.TemporaryDirectory()
        self.root = Path(self._temp.name)
        self.originals = self.root / "originals" / "originals_upscaled"
        self.output_dir = self.root / "src" / "assets"
        self.canonical = self.root / "src" / "data" / "images.json"
        self.generated = self.root / "src" / "data" / "images.generated.json"
        self.slim = self.root / "public" / "images.slim.json"
        self.config_path = self.root / "site.config.json"
        self.write_config()

    def tearDown(self):
        self._temp.cleanup()

    def write_config(self, upscale=None, images=None):
        config = {
            "images": {
                "originalsDir": str(self.originals),
                "outputDir": str(self.output_dir),
                "indexPath": str(self.canonical),
                "generatedIndexPath": str(self.generated),
                "slimIndexPath": str(self.slim),
                "formats": ["webp"],
                **(images or {}),
            },
            "upscale": {
                "root": str(self.root / "originals"),
                "toolsDir": str(self.root / "tools"),
                **(upscale or {}),
            },
        }
        self.config_path.write_text(json.dumps(config), encoding="utf-8")

    def run_cli(self, *extra):
        argv = ["--config", str(self.config_path), *extra]
        stdout = io.StringIO()
        with mock.patch("sys.stdout", stdout), mock.patch("sys.stderr", io.StringIO()):
            with mock.patch("toolchain.shutil.which", return_value=None):
                rc = build_images.main(argv)
        return rc, stdout.getvalue()

    def generated_records(self):
        return json.loads(self.generated.read_text(encoding="utf-8"))


class TestStillsPipeline(PipelineTestCase):
    def test_first_run_writes_full_and_slim_indexes(self):
        make_image(self.originals / "chars" / "neko.png", (1600, 1200))
        make_image(self.originals / "inu.png", (300, 400))

        rc, stdout = self.run_cli("--skip-upscale")

        self.assertEqual(rc, 0)
        records = self.generated_records()
        self.assertEqual(sorted(r["source"] for r in records), ["chars/neko.png", "inu.png"])
        for item in records:
            self.assertTrue(is_ulid_like(item["id"]))
            for tier in ("s", "s2x", "l", "l2x"):
                self.assertTrue((self.output_dir / tier / f"{item['id']}.webp").exists())
        slim = json.loads(self.slim.read_text(encoding="utf-8"))
        self.assertEqual([entry["id"] for entry in slim], [r["id"] for r in reversed(records)])
        self.assertFalse(self.canonical.exists())
        self.assertIn("made=8", stdout)

    def test_second_run_is_idempotent(self):
        make_image(self.originals / "neko.png", (800, 600))
        self.run_cli("--skip-upscale")
        first = self.generated.read_bytes()
        first_slim = self.slim.read_bytes()

        rc, stdout = self.run_cli("--skip-upscale")

        self.assertEqual(rc, 0)
        self.assertEqual(self.generated.read_bytes(), first)
        self.assertEqual(self.slim.read_bytes(), first_slim)
        self.assertIn("made=0", stdout)

    def test_identity_survives_touching_the_source(self):
        source = make_image(self.originals / "neko.png", (800, 600))
        self.run_cli("--skip-upscale")
        before = self.generated_records()[0]

        later = source.stat().st_mtime + 3600
        os.utime(source, (later, later))
        self.run_cli("--skip-upscale")
        after = self.generated_records()[0]

        self.assertEqual(after["id"], before["id"])
        self.assertEqual(after["createdAt"], before["createdAt"])
        self.assertEqual(after["sortKey"], before["sortKey"])

    def test_human_fields_from_canonical_file_are_preserved(self):
        make_image(self.originals / "neko.png", (800, 600))
        self.run_cli("--skip-upscale")
        record = self.generated_records()[0]
        curated = {
            "id": record["id"],
            "source": "neko.png",
            "title": "Neko",
            "alt": "A cat in a box",
            "tags": ["cat"],
            "links": {"products": ["https://shop.example/neko"], "related": []},
        }
        self.canonical.write_text(json.dumps([curated], indent=2) + "\n", encoding="utf-8")
        canonical_bytes = self.canonical.read_bytes()

        rc, _stdout = self.run_cli("--skip-upscale")

        self.assertEqual(rc, 0)
        self.assertEqual(self.canonical.read_bytes(), canonical_bytes)
        merged = self.generated_records()[0]
        self.assertEqual(merged["id"], record["id"])
        self.assertEqual(merged["title"], "Neko")
        self.assertEqual(merged["alt"], "A cat in a box")
        self.assertEqual(merged["tags"], ["cat"])
        self.assertEqual(merged["w"], 800)
        slim = json.loads(self.slim.read_text(encoding="utf-8"))
        self.assertTrue(slim[0]["hasProducts"])

    def test_canonical_file_change_during_run_fails(self):
        make_image(self.originals / "neko.png", (800, 600))
        self.canonical.parent.mkdir(parents=True, exist_ok=True)
        self.canonical.write_text("[]\n", encoding="utf-8")
        real_run_stills = build_images.run_stills

        def tamper(options, prior):
            self.canonical.write_text('[{"id": "tampered"}]\n', encoding="utf-8")
            return real_run_stills(options, prior)

        with mock.patch("build_images.run_stills", side_effect=tamper):
            rc, _stdout = self.run_cli("--skip-upscale")

        self.assertEqual(rc, 2)

    def test_empty_originals_writes_nothing(self):
        self.originals.mkdir(parents=True)

        rc, stdout = self.run_cli("--skip-upscale")

        self.assertEqual(rc, 0)
        self.assertFalse(self.generated.exists())
        self.assertFalse(self.slim.exists())
        self.assertIn("No source images found", stdout)

    def test_orphans_are_kept_unless_cleanup(self):
        make_image(self.originals / "keep.png", (800, 600))
        gone = make_image(self.originals / "gone.png", (800, 600), color=(10, 20, 30))
        self.run_cli("--skip-upscale")
        gone_id = next(r["id"] for r in self.generated_records() if r["source"] == "gone.png")
        gone.unlink()

        self.run_cli("--skip-upscale")
        self.assertEqual(len(self.generated_records()), 2)
        self.assertTrue((self.output_dir / "s" / f"{gone_id}.webp").exists())

        rc, stdout = self.run_cli("--skip-upscale", "--cleanup")

        self.assertEqual(rc, 0)
        self.assertEqual([r["source"] for r in self.generated_records()], ["keep.png"])
        self.assertFalse((self.output_dir / "s" / f"{gone_id}.webp").exists())
        self.assertIn("orphaned variants removed: 4", stdout)

    def test_leftover_upscale_stages_are_not_indexed(self):
        make_image(self.originals / "neko.png", (800, 600))
        make_image(self.originals / ".upscale-x7q1" / "neko_tmp1.png", (400, 300))
        make_image(self.originals / ".neko_3k9d.png", (800, 600))

        rc, _stdout = self.run_cli("--skip-upscale")

        self.assertEqual(rc, 0)
        self.assertEqual([r["source"] for r in self.generated_records()], ["neko.png"])

    def test_oversized_image_is_counted_and_reported(self):
        make_image(self.originals / "huge.png", (800, 600))
        make_image(self.originals / "ok.png", (800, 600), color=(1, 2, 3))
        real_encode = imaging.encode_fit_inside

        def encode(src, dst, **kwargs):
            if src.name == "huge.png":
                raise Image.DecompressionBombError("Image size exceeds limit")
            return real_encode(src, dst, **kwargs)

        with mock.patch("variants.encode_fit_inside", side_effect=encode):
            rc, stdout = self.run_cli("--skip-upscale")

        self.assertEqual(rc, 0)
        self.assertEqual([r["source"] for r in self.generated_records()], ["ok.png"])
        self.assertIn("errors=1", stdout)
        self.assertIn("Failed: huge.png: Image size exceeds limit", stdout)

    def test_public_dir_mirror(self):
        make_image(self.originals / "neko.png", (800, 600))
        public_assets = self.root / "public" / "assets"
        self.write_config(images={"publicDir": str(public_assets)})

        rc, _stdout = self.run_cli("--skip-upscale")

        self.assertEqual(rc, 0)
        record_id = self.generated_records()[0]["id"]
        self.assertTrue((public_assets / "l2x" / f"{record_id}.webp").exists())


class TestConfigurationAndUpscale(PipelineTestCase):
    def test_invalid_thresholds_exit_with_error(self):
        self.write_config(upscale={"minForHard": 900, "minForEasy": 700})
        make_image(self.originals / "neko.png", (800, 600))

        rc, _stdout = self.run_cli("--skip-upscale")

        self.assertEqual(rc, 1)
        self.assertFalse(self.generated.exists())

    def test_invalid_canonical_json_exits_with_error(self):
        make_image(self.originals / "neko.png", (800, 600))
        self.canonical.parent.mkdir(parents=True, exist_ok=True)
        self.canonical.write_text("[{broken", encoding="utf-8")

        rc, _stdout = self.run_cli("--skip-upscale")

        self.assertEqual(rc, 1)
        self.assertFalse(self.generated.exists())

    def test_large_source_is_copied_through_upscale_stage(self):
        lowres = self.root / "originals" / "originals_lowres"
        make_image(lowres / "booth" / "poster.png", (2400, 1800))

        rc, _stdout = self.run_cli()

        self.assertEqual(rc, 0)
        self.assertTrue((self.originals / "booth_poster.png").exists())
        report = (self.root / "originals" / "upscale-report.tsv").read_text(encoding="utf-8")
        self.assertIn("target>=2000", report)
        self.assertEqual([r["source"] for r in self.generated_records()], ["booth_poster.png"])

    def test_upscale_only_does_not_write_indexes(self):
        lowres = self.root / "originals" / "originals_lowres"
        make_image(lowres / "poster.png", (2400, 1800))

        rc, _stdout = self.run_cli("--upscale-only")

        self.assertEqual(rc, 0)
        self.assertTrue((self.originals / "poster.png").exists())
        self.assertFalse(self.generated.exists())

    def test_missing_upscaler_is_fatal_when_needed(self):
        lowres = self.root / "originals" / "originals_lowres"
        make_image(lowres / "tiny.png", (200, 150))

        rc, _stdout = self.run_cli()

        self.assertEqual(rc, 1)
        self.assertFalse(self.generated.exists())
        self.assertEqual(list(self.originals.glob("*")), [])


if __name__ == "__main__":
    unittest.main()
