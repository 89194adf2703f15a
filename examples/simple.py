import asyncio
import logging

from job_scheduler import JobConflictError, SchedulerConfig, create_service

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def main():
    # WEBHOOK_URL, DATABASE_URL, JOB_DURATION, ... are read from the environment here only.
    service = create_service(SchedulerConfig.from_env())
    await service.engine.start()
    try:
        job = await service.create_job({"taskName": "sync", "payload": {"n": 1}, "priority": "high"})
        print(f"Created: {job.to_record()}")

        ack = await service.run_job(job.id)
        print(f"Run: {ack.model_dump(mode='json')}")

        try:
            await service.run_job(job.id)
        except JobConflictError as e:
            print(f"Second run rejected ({e.http_status}): {e.message}")

        await service.engine.drain()
        job = await service.get_job(job.id)
        print(f"Finished: {job.to_record()}")

        for pending in await service.list_jobs(status="pending", priority="high"):
            print(f"Still pending: {pending.id}")
    finally:
        await service.engine.stop()


if __name__ == "__main__":
    asyncio.run(main())
