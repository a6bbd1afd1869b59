from __future__ import annotations

import io
import shutil
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from backend.app.errors import ConcatenationError, ValidationError
from backend.app.pipeline.concat import MediaEngine, _parse_out_time_s, get_media_engine
from backend.app.pipeline.utils import ffprobe_json, probe_duration_s


class _FakePopen:
    def __init__(self, lines: list[str], code: int) -> None:
        self.stdout = io.StringIO("".join(lines))
        self._code = code
        self.running = True
        self.killed = False

    def poll(self) -> int | None:
        return None if self.running else self._code

    def kill(self) -> None:
        self.killed = True
        self.running = False
        self._code = -9

    def wait(self) -> int:
        self.running = False
        return self._code


class ConcatenateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.engine = MediaEngine(ffmpeg_bin="ffmpeg", ffprobe_bin="ffprobe", scratch_dir=self.tmp.name)

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_single_input_returned_unchanged(self) -> None:
        media = b"\x00\x01single-segment"
        with patch.object(MediaEngine, "_run_with_progress") as run:
            self.assertIs(media, self.engine.concatenate([media]))
        run.assert_not_called()

    def test_empty_input_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            self.engine.concatenate([])

    def test_stream_copy_in_order_and_scratch_cleaned(self) -> None:
        seen: dict[str, object] = {}

        def _fake_run(engine, cmd, work, total_s, on_progress):
            seen["cmd"] = cmd
            seen["work"] = work
            seen["manifest"] = (work / "concat.txt").read_text(encoding="utf-8")
            seen["inputs"] = [(work / f"input_{i}.mp4").read_bytes() for i in range(3)]
            (work / cmd[-1]).write_bytes(b"joined")

        progress: list[int] = []
        with (
            patch.object(MediaEngine, "_run_with_progress", autospec=True, side_effect=_fake_run),
            patch.object(MediaEngine, "_total_duration_s", return_value=12.0),
        ):
            result = self.engine.concatenate([b"a", b"b", b"c"], on_progress=progress.append)

        self.assertEqual(b"joined", result)
        cmd = seen["cmd"]
        self.assertEqual(["-f", "concat"], cmd[cmd.index("-f"):cmd.index("-f") + 2])
        self.assertEqual("copy", cmd[cmd.index("-c") + 1])
        self.assertEqual("concat.txt", cmd[cmd.index("-i") + 1])
        self.assertEqual("file 'input_0.mp4'\nfile 'input_1.mp4'\nfile 'input_2.mp4'\n", seen["manifest"])
        self.assertEqual([b"a", b"b", b"c"], seen["inputs"])
        self.assertFalse(Path(seen["work"]).exists())
        self.assertEqual([100], progress)
        self.assertEqual([], list(Path(self.tmp.name).iterdir()))

    def test_failure_still_removes_scratch(self) -> None:
        seen: dict[str, Path] = {}

        def _fail(engine, cmd, work, total_s, on_progress):
            seen["work"] = work
            raise ConcatenationError("ffmpeg concat failed: boom")

        with (
            patch.object(MediaEngine, "_run_with_progress", autospec=True, side_effect=_fail),
            patch.object(MediaEngine, "_total_duration_s", return_value=0.0),
        ):
            with self.assertRaises(ConcatenationError):
                self.engine.concatenate([b"a", b"b"])

        self.assertFalse(seen["work"].exists())

    def test_empty_output_is_an_error(self) -> None:
        with (
            patch.object(MediaEngine, "_run_with_progress"),
            patch.object(MediaEngine, "_total_duration_s", return_value=0.0),
        ):
            with self.assertRaises(ConcatenationError):
                self.engine.concatenate([b"a", b"b"])

    def test_missing_scratch_dir_is_a_concatenation_error(self) -> None:
        engine = MediaEngine(scratch_dir=str(Path(self.tmp.name) / "does-not-exist"))
        with self.assertRaises(ConcatenationError):
            engine.concatenate([b"a", b"b"])

    def test_missing_binary_is_a_concatenation_error(self) -> None:
        with (
            patch.object(MediaEngine, "_run_with_progress", side_effect=FileNotFoundError("ffmpeg")),
            patch.object(MediaEngine, "_total_duration_s", return_value=0.0),
        ):
            with self.assertRaises(ConcatenationError):
                self.engine.concatenate([b"a", b"b"])


class ProgressParsingTests(unittest.TestCase):
    def test_parse_out_time(self) -> None:
        self.assertEqual(2.5, _parse_out_time_s("out_time_us=2500000\n"))
        self.assertEqual(1.0, _parse_out_time_s("out_time_ms=1000000"))
        self.assertIsNone(_parse_out_time_s("frame=12"))
        self.assertIsNone(_parse_out_time_s("out_time_us=N/A"))

    def test_run_with_progress_reports_monotonic_percentages(self) -> None:
        engine = MediaEngine()
        lines = ["out_time_us=1000000\n", "frame=10\n", "out_time_us=1000000\n", "out_time_us=3000000\n"]
        progress: list[int] = []
        with tempfile.TemporaryDirectory() as tmp:
            with patch("backend.app.pipeline.concat.subprocess.Popen", return_value=_FakePopen(lines, 0)):
                engine._run_with_progress(["ffmpeg"], Path(tmp), 4.0, progress.append)
        self.assertEqual([25, 75], progress)

    def test_run_with_progress_raises_on_nonzero_exit(self) -> None:
        engine = MediaEngine()
        with tempfile.TemporaryDirectory() as tmp:
            with patch("backend.app.pipeline.concat.subprocess.Popen", return_value=_FakePopen([], 1)):
                with self.assertRaises(ConcatenationError):
                    engine._run_with_progress(["ffmpeg"], Path(tmp), 0.0, None)

    def test_raising_progress_callback_kills_ffmpeg(self) -> None:
        engine = MediaEngine()
        fake = _FakePopen(["out_time_us=1000000\n", "out_time_us=2000000\n"], 0)

        def _boom(pct: int) -> None:
            raise RuntimeError("redis unavailable")

        with tempfile.TemporaryDirectory() as tmp:
            with patch("backend.app.pipeline.concat.subprocess.Popen", return_value=fake):
                with self.assertRaises(RuntimeError):
                    engine._run_with_progress(["ffmpeg"], Path(tmp), 4.0, _boom)

        self.assertTrue(fake.killed)
        self.assertIsNotNone(fake.poll())
        self.assertTrue(fake.stdout.closed)

    def test_child_process_reaped_when_progress_callback_fails(self) -> None:
        real_popen = subprocess.Popen
        spawned: list[subprocess.Popen] = []

        def _spawn(*args, **kwargs):
            proc = real_popen(*args, **kwargs)
            spawned.append(proc)
            return proc

        slow_ffmpeg = [
            sys.executable, "-c",
            "import sys, time; print('out_time_us=1000000', flush=True); time.sleep(30)",
        ]

        def _boom(pct: int) -> None:
            raise RuntimeError("redis unavailable")

        engine = MediaEngine()
        with tempfile.TemporaryDirectory() as tmp:
            with patch("backend.app.pipeline.concat.subprocess.Popen", side_effect=_spawn):
                with self.assertRaises(RuntimeError):
                    engine._run_with_progress(slow_ffmpeg, Path(tmp), 4.0, _boom)

        self.assertEqual(1, len(spawned))
        self.assertIsNotNone(spawned[0].poll())

    def test_process_default_engine_is_shared(self) -> None:
        self.assertIs(get_media_engine(), get_media_engine())


@unittest.skipUnless(shutil.which("ffmpeg") and shutil.which("ffprobe"), "ffmpeg not installed")
class ConcatenateIntegrationTests(unittest.TestCase):
    def test_duration_is_sum_of_inputs(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            clips: list[bytes] = []
            for i in range(2):
                clip = Path(tmp) / f"clip{i}.mp4"
                subprocess.run(
                    ["ffmpeg", "-y", "-f", "lavfi", "-i", "testsrc=duration=1:size=320x240:rate=25",
                     "-c:v", "mpeg4", str(clip)],
                    check=True,
                    capture_output=True,
                )
                clips.append(clip.read_bytes())

            joined = MediaEngine(scratch_dir=tmp).concatenate(clips)
            out = Path(tmp) / "joined.mp4"
            out.write_bytes(joined)
            duration = probe_duration_s(ffprobe_json(out))

        self.assertAlmostEqual(2.0, duration, delta=0.15)


if __name__ == "__main__":
    unittest.main()
