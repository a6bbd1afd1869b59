from __future__ import annotations

import io
import tempfile
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from backend.app.config import settings
from backend.app.errors import FrameExtractionError, ValidationError
from backend.app.pipeline.utils import ffprobe_json, probe_duration_s, run_cmd

# Stay clear of EOF; seeking to the exact duration yields no frame.
END_OFFSET_S = 0.1
JPEG_QUALITY = 95


def extract_last_frame(
    video_bytes: bytes,
    *,
    ffmpeg_bin: str | None = None,
    ffprobe_bin: str | None = None,
    scratch_dir: str | None = None,
) -> bytes:
    """Return the final frame of an encoded video as JPEG bytes."""
    if not video_bytes:
        raise FrameExtractionError("Cannot extract a frame from empty media")

    try:
        scratch = tempfile.TemporaryDirectory(prefix="frame_", dir=scratch_dir or settings.scratch_dir)
    except OSError as exc:
        raise FrameExtractionError(f"Could not create scratch directory: {exc}") from exc

    with scratch as tmp:
        work = Path(tmp)
        input_mp4 = work / "segment.mp4"
        out_path = work / "last_frame.jpg"
        try:
            input_mp4.write_bytes(video_bytes)
        except OSError as exc:
            raise FrameExtractionError(f"Could not stage segment media: {exc}") from exc

        try:
            probe = ffprobe_json(input_mp4, ffprobe_bin=ffprobe_bin)
        except (RuntimeError, ValueError, OSError) as exc:
            raise FrameExtractionError(f"Could not decode segment media: {exc}") from exc
        duration_s = probe_duration_s(probe)
        if duration_s <= 0:
            raise FrameExtractionError("Segment media has zero duration")

        t_s = max(0.0, duration_s - END_OFFSET_S)
        cmd = [
            ffmpeg_bin or settings.ffmpeg_bin, "-y",
            "-ss", f"{t_s:.3f}",
            "-i", str(input_mp4),
            "-frames:v", "1",
            "-q:v", "2",
            str(out_path)
        ]
        try:
            code, out, err = run_cmd(cmd)
        except OSError as exc:
            raise FrameExtractionError(f"ffmpeg could not be started: {exc}") from exc
        if code != 0:
            raise FrameExtractionError(f"ffmpeg extract frame failed: {err}")
        if not out_path.exists() or out_path.stat().st_size == 0:
            raise FrameExtractionError("ffmpeg produced no frame")
        return out_path.read_bytes()


def parse_size(size: str) -> tuple[int, int]:
    try:
        w_raw, h_raw = str(size).lower().split("x", 1)
        width, height = int(w_raw), int(h_raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid size: {size!r} (expected WIDTHxHEIGHT)") from exc
    if width <= 0 or height <= 0:
        raise ValidationError(f"Invalid size: {size!r}")
    return width, height


def fit_image_to_size(image_bytes: bytes, size: str) -> bytes:
    """Resize a reference image to the video resolution, re-encoded as JPEG.

    Images that already match are returned untouched.
    """
    width, height = parse_size(size)
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            if img.size == (width, height) and img.format == "JPEG":
                return image_bytes
            resized = img.convert("RGB").resize((width, height), Image.Resampling.LANCZOS)
    except (UnidentifiedImageError, OSError) as exc:
        raise ValidationError(f"Reference image could not be decoded: {exc}") from exc
    buf = io.BytesIO()
    resized.save(buf, format="JPEG", quality=JPEG_QUALITY)
    return buf.getvalue()
