import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI

from libris.api.router import library_error_handler, router
from libris.config import settings
from libris.db import init_db, make_engine, make_session_factory
from libris.errors import LibraryError
from libris.notifications.dispatcher import DatabaseDispatcher, NotificationDispatcher, build_dispatcher
from libris.worker.notifier import run_worker

logger = logging.getLogger(__name__)

def create_app(conf=settings, *, engine=None, dispatcher: NotificationDispatcher | None = None) -> FastAPI:
    logging.basicConfig(
        level=conf.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    engine = engine or make_engine(conf.DATABASE_URL)
    session_factory = make_session_factory(engine)
    dispatcher = dispatcher or build_dispatcher(session_factory, conf)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        worker = None
        if conf.ENABLE_NOTIFICATION_WORKER:
            if isinstance(dispatcher, DatabaseDispatcher):
                worker = asyncio.create_task(run_worker(dispatcher))
            else:
                logger.warning("ENABLE_NOTIFICATION_WORKER ignorado: el backend %r no usa worker.", conf.NOTIFICATION_BACKEND)
        try:
            yield
        finally:
            if worker:
                worker.cancel()
                with suppress(asyncio.CancelledError):
                    await worker
            await dispatcher.aclose()
            await engine.dispose()

    app = FastAPI(title=conf.APP_NAME, lifespan=lifespan)
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.dispatcher = dispatcher
    app.include_router(router)
    app.add_exception_handler(LibraryError, library_error_handler)
    return app

def run():
    import uvicorn
    uvicorn.run("libris.main:create_app", factory=True, host="0.0.0.0", port=settings.PORT)
