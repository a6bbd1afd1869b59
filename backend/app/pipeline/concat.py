from __future__ import annotations

import shutil
import subprocess
import tempfile
import threading
from functools import lru_cache
from pathlib import Path
from typing import Callable

from backend.app.config import settings
from backend.app.errors import ConcatenationError, ValidationError
from backend.app.pipeline.utils import ffprobe_json, probe_duration_s

ProgressCallback = Callable[[int], None]


def _parse_out_time_s(line: str) -> float | None:
    # ffmpeg -progress emits key=value lines; out_time_us/out_time_ms are both microseconds.
    key, _, value = line.strip().partition("=")
    if key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        return max(0.0, int(value) / 1_000_000)
    except ValueError:
        return None


class MediaEngine:
    """Owns the ffmpeg binaries and serializes concatenations made through it.

    Each engine holds its own lock; separate engines may run concurrently.
    """

    def __init__(
        self,
        ffmpeg_bin: str | None = None,
        ffprobe_bin: str | None = None,
        scratch_dir: str | None = None,
    ) -> None:
        self.ffmpeg_bin = ffmpeg_bin or settings.ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin or settings.ffprobe_bin
        self.scratch_dir = scratch_dir if scratch_dir is not None else settings.scratch_dir
        self._lock = threading.Lock()

    def ready(self) -> bool:
        return shutil.which(self.ffmpeg_bin) is not None and shutil.which(self.ffprobe_bin) is not None

    def _total_duration_s(self, inputs: list[Path]) -> float:
        total = 0.0
        for path in inputs:
            try:
                total += probe_duration_s(ffprobe_json(path, ffprobe_bin=self.ffprobe_bin))
            except (RuntimeError, ValueError, OSError):
                # Progress degrades to start/end only.
                return 0.0
        return total

    def _run_with_progress(
        self,
        cmd: list[str],
        work: Path,
        total_s: float,
        on_progress: ProgressCallback | None,
    ) -> None:
        stderr_path = work / "ffmpeg.log"
        last_pct = -1
        with open(stderr_path, "w", encoding="utf-8") as stderr_file:
            p = subprocess.Popen(cmd, cwd=str(work), stdout=subprocess.PIPE, stderr=stderr_file, text=True)
            assert p.stdout is not None
            try:
                for line in p.stdout:
                    if on_progress is None or total_s <= 0:
                        continue
                    out_time_s = _parse_out_time_s(line)
                    if out_time_s is None:
                        continue
                    pct = min(99, int(out_time_s / total_s * 100))
                    if pct > last_pct:
                        last_pct = pct
                        on_progress(pct)
            except BaseException:
                # ffmpeg must not outlive the scratch dir.
                if p.poll() is None:
                    p.kill()
                p.wait()
                raise
            finally:
                p.stdout.close()
            code = p.wait()
        if code != 0:
            err = stderr_path.read_text(encoding="utf-8", errors="replace")
            raise ConcatenationError(f"ffmpeg concat failed: {err[-2000:]}")

    def concatenate(self, media_list: list[bytes], on_progress: ProgressCallback | None = None) -> bytes:
        """Join encoded segments in order with a stream copy (no re-encode).

        Inputs must share codec parameters; a single input is returned as is.
        """
        if not media_list:
            raise ValidationError("No media provided for concatenation")
        if len(media_list) == 1:
            return media_list[0]

        print(f"[MediaEngine] concatenating {len(media_list)} segments")
        with self._lock:
            try:
                scratch = tempfile.TemporaryDirectory(prefix="concat_", dir=self.scratch_dir)
            except OSError as exc:
                raise ConcatenationError(f"Could not create scratch directory: {exc}") from exc
            with scratch as tmp:
                work = Path(tmp)
                inputs: list[Path] = []
                for i, media in enumerate(media_list):
                    path = work / f"input_{i}.mp4"
                    path.write_bytes(media)
                    inputs.append(path)

                manifest = work / "concat.txt"
                manifest.write_text("\n".join(f"file '{p.name}'" for p in inputs) + "\n", encoding="utf-8")

                output = work / "output.mp4"
                cmd = [
                    self.ffmpeg_bin, "-y",
                    "-f", "concat",
                    "-safe", "0",
                    "-i", manifest.name,
                    "-c", "copy",
                    "-progress", "pipe:1",
                    "-nostats",
                    output.name
                ]
                try:
                    self._run_with_progress(cmd, work, self._total_duration_s(inputs), on_progress)
                except OSError as exc:
                    raise ConcatenationError(f"ffmpeg could not be started: {exc}") from exc
                if not output.exists() or output.stat().st_size == 0:
                    raise ConcatenationError("ffmpeg produced an empty output")
                result = output.read_bytes()

        if on_progress is not None:
            on_progress(100)
        print(f"[MediaEngine] concatenation complete, {len(result)} bytes")
        return result


@lru_cache(maxsize=1)
def get_media_engine() -> MediaEngine:
    return MediaEngine()
