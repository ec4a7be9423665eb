from fastapi import FastAPI, Response
from datetime import datetime, timezone
from sqlalchemy import text

from config import config
from director import Director
from models import SessionLocal, init_db
from observability import structured_logger, metrics
from scheduler import DirectorScheduler

app = FastAPI(title="MDM Director")

backend_start_time = datetime.now(timezone.utc)

@app.on_event("startup")
async def startup_event():
    """
    Build the director service and start the reconciliation loops.
    Configuration problems are logged; the process keeps serving health checks.
    """
    print("=" * 60)
    print("🚀 Starting MDM Director...")
    print(f"⏰ Startup time: {backend_start_time.isoformat()}")
    print("=" * 60)

    config.print_config_summary()
    structured_logger.set_debug(config.debug)

    try:
        init_db()
        print("✅ Database initialized")
    except Exception as e:
        structured_logger.log_event(
            "startup.database.failed",
            level="ERROR",
            error=str(e),
            error_type=type(e).__name__
        )

    director = Director.from_config(config, SessionLocal)
    scheduler = DirectorScheduler.for_director(director, debug=config.debug)
    app.state.director = director
    app.state.scheduler = scheduler

    try:
        await scheduler.start()
        structured_logger.log_event("startup.scheduler.started")
    except Exception as e:
        structured_logger.log_event(
            "startup.scheduler.failed",
            level="ERROR",
            error=str(e),
            error_type=type(e).__name__
        )

@app.on_event("shutdown")
async def shutdown_event():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        await scheduler.stop()
    director = getattr(app.state, "director", None)
    if director is not None:
        await director.aclose()

@app.get("/healthz")
async def health_check():
    """Liveness check, also reporting database reachability and scheduler state."""
    uptime_seconds = (datetime.now(timezone.utc) - backend_start_time).total_seconds()

    database_ok = True
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        database_ok = False
        structured_logger.log_event("healthz.database.failed", level="WARN", error=str(e))
    finally:
        db.close()

    scheduler = getattr(app.state, "scheduler", None)
    return {
        "status": "healthy",
        "database": "ok" if database_ok else "unavailable",
        "scheduler_running": bool(scheduler and scheduler.running),
        "uptime_seconds": int(uptime_seconds),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }

@app.get("/metrics")
async def prometheus_metrics():
    return Response(
        content=metrics.get_prometheus_text(),
        media_type="text/plain; version=0.0.4"
    )
