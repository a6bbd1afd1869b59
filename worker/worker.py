from __future__ import annotations

from rq import Worker

from backend.app.jobs import get_queue, get_redis, queue_name


def main() -> None:
    redis = get_redis()
    queue = get_queue()
    print(f"[Worker] listening on queue {queue_name()}")
    worker = Worker([queue], connection=redis)
    worker.work(with_scheduler=False)


if __name__ == "__main__":
    main()
