import logging
from rq import Worker
from app.jobs.composition_job import schedule_daily_runs
from app.jobs.queue import queue, redis
from app.core.config import settings

if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # The scheduler in this worker moves booked runs onto the queue when due
    schedule_daily_runs(queue)
    w = Worker([queue], connection=redis)
    w.work(with_scheduler=True)
