"""Convenience entry point for running the payment engine Celery worker.

Deployments normally use the Celery CLI; ``--beat`` embeds the scheduler so a
single local process runs both the daily billing cycle and webhook retries.
"""
from __future__ import annotations

import sys

from .config.celery import celery_app


def main(argv: list[str] | None = None) -> None:
    extra = list(sys.argv[1:] if argv is None else argv)
    celery_app.worker_main(
        argv=[
            "worker",
            "--hostname=payment-engine@%h",
            "--queues=high,default,low",
            "--loglevel=INFO",
            *extra,
        ]
    )


if __name__ == "__main__":
    main()
