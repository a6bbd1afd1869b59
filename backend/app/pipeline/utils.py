from __future__ import annotations

import json
import os
import subprocess
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from backend.app.config import settings

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

def now_ms() -> int:
    return int(time.time() * 1000)

def run_cmd(cmd: list[str], cwd: Path | None = None) -> tuple[int, str, str]:
    p = subprocess.Popen(
        cmd,
        cwd=str(cwd) if cwd else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    out, err = p.communicate()
    return p.returncode, out, err

def ffprobe_json(video_path: Path, ffprobe_bin: str | None = None) -> dict[str, Any]:
    cmd = [
        ffprobe_bin or settings.ffprobe_bin, "-v", "error",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(video_path)
    ]
    code, out, err = run_cmd(cmd)
    if code != 0:
        raise RuntimeError(f"ffprobe failed: {err}")
    return json.loads(out)

def probe_duration_s(probe: dict[str, Any]) -> float:
    dur = (probe.get("format") or {}).get("duration")
    if dur is None:
        return 0.0
    try:
        return float(dur)
    except (TypeError, ValueError):
        return 0.0

def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)

def atomic_write_json(path: Path, obj: Any) -> None:
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(obj, indent=2, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp, path)

def atomic_write_bytes(path: Path, data: bytes) -> None:
    ensure_dir(path.parent)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)

def append_log(log_path: Path, line: str) -> None:
    ensure_dir(log_path.parent)
    with open(log_path, "a", encoding="utf-8") as f:
        f.write(f"[{utc_now_iso()}] {line.rstrip()}\n")
