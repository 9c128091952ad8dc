from __future__ import annotations

from datetime import datetime

from libris.notifications.jobs import (
    NotificationJob, WelcomeJob, LoanConfirmationJob, OverdueReminderJob,
    ReturnConfirmationJob, BookAvailableJob, ApprovalDecisionJob, AccountStatusJob,
)

_REQUEST_LABELS = {
    "user_registration": "registro de usuario",
    "book_add": "alta de libro",
    "book_update": "actualización de libro",
    "book_delete": "baja de libro",
}

def _d(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")

def render(job: NotificationJob) -> tuple[str, str]:
    """Devuelve (asunto, cuerpo) en texto plano para un trabajo de notificación."""
    name = job.recipient.name or job.recipient.email
    lines = [f"¡Hola, {name}! 👋", ""]
    if isinstance(job, WelcomeJob):
        subject = "Bienvenido a la biblioteca"
        lines.append(f"Recibimos tu registro, {job.data.first_name}.")
        lines.append(job.data.login_instructions)
    elif isinstance(job, LoanConfirmationJob):
        d = job.data
        subject = f"Préstamo confirmado: {d.book_title}"
        lines.append(f"Registramos el préstamo de “{d.book_title}” de {d.author}.")
        lines.append(f"Fecha de préstamo: {_d(d.borrowed_date)} · Devolver antes del {_d(d.due_date)}.")
    elif isinstance(job, OverdueReminderJob):
        d = job.data
        subject = f"Préstamo vencido: {d.book_title}"
        lines.append(f"“{d.book_title}” debía devolverse el {_d(d.due_date)} ({d.days_overdue} días de atraso).")
        if d.fine_amount:
            lines.append(f"Multa acumulada: ${d.fine_amount:.2f}.")
    elif isinstance(job, ReturnConfirmationJob):
        d = job.data
        subject = f"Devolución registrada: {d.book_title}"
        lines.append(f"Recibimos “{d.book_title}” el {_d(d.returned_date)}.")
        if d.was_overdue:
            lines.append("La devolución se hizo después de la fecha de vencimiento.")
            if d.fine_amount:
                lines.append(f"Multa a pagar: ${d.fine_amount:.2f}.")
    elif isinstance(job, BookAvailableJob):
        d = job.data
        subject = f"Disponible: {d.book_title}"
        lines.append(f"“{d.book_title}” de {d.author} ya tiene copias disponibles.")
    elif isinstance(job, ApprovalDecisionJob):
        d = job.data
        label = _REQUEST_LABELS.get(d.request_type, d.request_type)
        verdict = "aprobada" if d.status == "approved" else "rechazada"
        subject = f"Solicitud #{d.request_id} {verdict}"
        target = f" ({d.resource_title})" if d.resource_title else ""
        lines.append(f"Tu solicitud de {label}{target} fue {verdict}.")
        if d.admin_notes:
            lines.append(f"Notas del administrador: {d.admin_notes}")
    elif isinstance(job, AccountStatusJob):
        d = job.data
        states = {"activated": "activada", "suspended": "suspendida", "deactivated": "desactivada"}
        subject = f"Tu cuenta fue {states[d.status]}"
        lines.append(f"El estado de tu cuenta cambió: {states[d.status]}.")
        if d.reason:
            lines.append(f"Motivo: {d.reason}")
        if d.admin_notes:
            lines.append(f"Notas del administrador: {d.admin_notes}")
    else:
        raise ValueError(f"Tipo de notificación desconocido: {getattr(job, 'kind', job)!r}")
    return subject, "\n".join(lines)
