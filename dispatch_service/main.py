from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import LOCK_REAPER_INTERVAL_SECONDS, SERVICE_NAME
from .db import SessionLocal
from .errors import DispatchError
from .middleware import RequestLoggingMiddleware
from .rabbitmq import publisher
from .reaper import LockReaper
from .routes import router
from .services import ledger, notifier

app = FastAPI(title="Dispatch Service")

app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)

reaper = LockReaper(SessionLocal, ledger, notifier, interval_seconds=LOCK_REAPER_INTERVAL_SECONDS)


@app.exception_handler(DispatchError)
async def handle_dispatch_error(request: Request, err: DispatchError):
    return JSONResponse(status_code=err.status_code, content={"detail": err.message})


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "events_enabled": publisher.enabled,
        "lock_reaper_running": reaper.running,
    }


@app.on_event("startup")
async def startup():
    # Never crash service if RabbitMQ is temporarily unavailable
    try:
        await publisher.connect()
    except Exception as e:
        print(f"[{SERVICE_NAME}] RabbitMQ connect failed at startup; continuing without events: {e}")

    reaper.start()
    print(f"[{SERVICE_NAME}] lock reaper started (every {reaper.interval_seconds:.0f}s)")


@app.on_event("shutdown")
async def shutdown():
    try:
        await reaper.stop()
    except Exception as e:
        print(f"[{SERVICE_NAME}] lock reaper did not stop cleanly: {e}")
    try:
        await publisher.close()
    except Exception:
        pass
