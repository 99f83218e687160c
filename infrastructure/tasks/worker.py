"""Local worker entry point: consumes both billing queues, beat embedded."""
from __future__ import annotations

from .config.celery import CALLBACK_QUEUE, MAINTENANCE_QUEUE, celery_app


def main() -> None:
    celery_app.worker_main([
        "worker",
        "--loglevel=INFO",
        "--hostname=billing@%h",
        "-Q",
        f"{CALLBACK_QUEUE},{MAINTENANCE_QUEUE}",
        "--beat",
    ])


if __name__ == "__main__":
    main()
