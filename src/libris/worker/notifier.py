import asyncio
import logging
from typing import Awaitable, Callable

from libris.config import settings
from libris.models import JobStatus
from libris.notifications.dispatcher import DatabaseDispatcher
from libris.notifications.jobs import NotificationJob
from libris.notifications.messages import render

logger = logging.getLogger(__name__)

Deliver = Callable[[NotificationJob], Awaitable[None]]

async def log_delivery(job: NotificationJob) -> None:
    # Sin proveedor de correo: la "entrega" es dejar el mensaje en el log.
    subject, body = render(job)
    logger.info("[worker] %s -> %s | %s\n%s", job.kind, job.recipient.email, subject, body)

async def process_batch(dispatcher: DatabaseDispatcher, deliver: Deliver = log_delivery, limit: int = 10) -> int:
    """Un ciclo: reclama trabajos en cola, los entrega y marca el resultado.
    Devuelve cuántos se completaron."""
    done = 0
    for job_id, job in await dispatcher.claim(limit=limit):
        try:
            await deliver(job)
        except Exception as ex:
            status = await dispatcher.fail(job_id, f"{type(ex).__name__}: {ex}")
            level = logging.ERROR if status == JobStatus.FAILED else logging.WARNING
            logger.log(level, "[worker] %s (%s) falló, queda %s: %s", job.kind, job_id, status.value, ex)
            continue
        await dispatcher.complete(job_id)
        done += 1
    return done

async def run_worker(dispatcher: DatabaseDispatcher, deliver: Deliver = log_delivery):
    interval = max(1, int(settings.WORKER_POLL_INTERVAL_SECONDS))
    logger.info("[worker] Iniciado. Intervalo: %ss", interval)
    while True:
        try:
            n = await process_batch(dispatcher, deliver)
            if n:
                logger.info("[worker] %s notificaciones entregadas.", n)
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("[worker] Detenido.")
            raise
        except Exception:
            logger.exception("[worker] Error en ciclo")
            await asyncio.sleep(interval * 2)
