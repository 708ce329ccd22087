"""Worker as an HTTP service: the job loop plus a health endpoint for the platform probe."""

from __future__ import annotations

import asyncio
import contextlib
import os

from fastapi import FastAPI

from consult_api.worker import BATCH_SIZE, POLL_INTERVAL_SECONDS, worker_loop

app = FastAPI(title="Consultation Session Worker")
_worker_task: asyncio.Task | None = None


@app.get("/health")
def health() -> dict:
    running = bool(_worker_task and not _worker_task.done())
    return {
        "status": "ok" if running else "degraded",
        "worker_running": running,
        "poll_interval_seconds": POLL_INTERVAL_SECONDS,
        "batch_size": BATCH_SIZE,
    }


@app.on_event("startup")
async def start_worker() -> None:
    global _worker_task
    _worker_task = asyncio.create_task(worker_loop())


@app.on_event("shutdown")
async def stop_worker() -> None:
    if _worker_task is None:
        return
    _worker_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await _worker_task


def main() -> None:
    import uvicorn

    uvicorn.run(
        "consult_api.worker_service:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
    )


if __name__ == "__main__":
    main()
