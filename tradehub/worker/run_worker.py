"""Run ARQ worker. Usage: python -m tradehub.worker.run_worker"""

from arq import run_worker

from tradehub.worker.tasks import get_redis_settings, send_notification_email, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [send_notification_email]
    on_startup = startup
    on_shutdown = shutdown
    max_tries = 3


if __name__ == "__main__":
    run_worker(WorkerSettings)
