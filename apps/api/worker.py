"""RQ worker process entrypoint for webhook events."""

from rq import Worker

from logging_config import configure_logging
from services.webhook_queue import WEBHOOK_QUEUE_NAME, get_redis_connection


def main():
    configure_logging()
    redis_conn = get_redis_connection()
    worker = Worker([WEBHOOK_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
