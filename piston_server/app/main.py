# piston_server/app/main.py

from    fastapi                             import FastAPI, Request, status
from    fastapi.responses                   import JSONResponse

from    piston_server.config.settings       import settings
from    piston_server.database.db           import init_db
from    piston_server.services.errors       import PersistenceError
from    piston_server.utils.logger          import attachLibraryLoggers, getLogger
from    .dependencies                       import scheduler_engine
from    .mqtt_client                        import mqtt_client_instance
from    .routes                             import router

app     = FastAPI(title="Piston Control Server")
logger  = getLogger("PistonServer", settings.log_level)

attachLibraryLoggers("apscheduler", "paho")

app.include_router(router)


@app.exception_handler(PersistenceError)
async def persistence_error_handler(request: Request, exc: PersistenceError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": "Internal server error"})


@app.on_event("startup")
async def startup_event():
    init_db()                                                       # Start the database.
    mqtt_client_instance.start()                                    # Start the MQTT client
    scheduler_engine.start()                                        # Load enabled schedules


@app.on_event("shutdown")
async def shutdown_event():
    scheduler_engine.stop()
    mqtt_client_instance.stop()
