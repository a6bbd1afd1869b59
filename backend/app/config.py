from __future__ import annotations

import os
from dataclasses import dataclass

@dataclass(frozen=True)
class Settings:
    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    rq_queue: str = os.getenv("RQ_QUEUE", "default")
    data_dir: str = os.getenv("DATA_DIR", "/data")
    job_timeout_s: int = int(os.getenv("JOB_TIMEOUT_S", "7200"))

    # Hosted provider
    hosted_base_url: str = os.getenv("HOSTED_BASE_URL", "https://api.openai.com/v1")
    default_video_model: str = os.getenv("DEFAULT_VIDEO_MODEL", "sora-2")
    default_video_size: str = os.getenv("DEFAULT_VIDEO_SIZE", "1280x720")
    planner_model: str = os.getenv("PLANNER_MODEL", "gpt-4o")
    image_model: str = os.getenv("IMAGE_MODEL", "gpt-image-1")
    http_timeout_s: float = float(os.getenv("HTTP_TIMEOUT_S", "120"))

    # Job polling; 0 disables the corresponding bound
    poll_interval_s: float = float(os.getenv("POLL_INTERVAL_S", "2.0"))
    poll_max_attempts: int = int(os.getenv("POLL_MAX_ATTEMPTS", "0"))
    poll_deadline_s: float = float(os.getenv("POLL_DEADLINE_S", "1800"))

    # Media engine
    ffmpeg_bin: str = os.getenv("FFMPEG_BIN", "ffmpeg")
    ffprobe_bin: str = os.getenv("FFPROBE_BIN", "ffprobe")
    scratch_dir: str | None = os.getenv("SCRATCH_DIR") or None

settings = Settings()
