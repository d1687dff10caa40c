import logging

from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from starlette.concurrency import run_in_threadpool

from .background import TaskRegistry
from .errors import NotFound, StoreFailure
from .mailer import ContactMessage
from .models import Lead, Vehicle
from .validation import validate_contact

logger = logging.getLogger(__name__)


def vehicle_title(v: Vehicle) -> str:
    return " ".join(str(p) for p in (v.year, v.make, v.model, v.trim) if p)


class LeadService:
    def __init__(self, engine: Engine, mailer, tasks: TaskRegistry):
        self.engine = engine
        self.mailer = mailer
        self.tasks = tasks

    def _insert(self, lead: Lead) -> Lead:
        with Session(self.engine) as s:
            if lead.vehicle_id and not lead.vehicle_title:
                v = s.get(Vehicle, lead.vehicle_id)
                if v:
                    lead.vehicle_title = vehicle_title(v)
            s.add(lead)
            s.commit()
            s.refresh(lead)
            return lead

    async def submit(self, data: dict, ip: str, user_agent: str) -> int:
        """Store a contact submission and notify by email in the background.

        Raises SpamDetected when the honeypot is filled; nothing is stored then.
        """
        form = validate_contact(data)
        lead = Lead(
            name=form.name,
            phone=form.phone,
            message=form.message,
            vehicle_id=form.vehicle_id,
            vehicle_title=form.vehicle_title,
            ip_address=ip,
            user_agent=user_agent,
        )
        try:
            lead = await run_in_threadpool(self._insert, lead)
        except SQLAlchemyError as exc:
            logger.error("failed to save lead: %s", exc)
            raise StoreFailure("Failed to send message") from exc
        msg = ContactMessage(name=lead.name, phone=lead.phone, message=lead.message, vehicle=lead.vehicle_title)
        if getattr(self.mailer, "configured", True):
            self.tasks.spawn(self.mailer.send(msg), name=f"lead-email:{lead.id}")
        else:
            logger.info("lead %s stored; email skipped (mailer not configured)", lead.id)
        return lead.id

    def list_leads(self) -> list[dict]:
        with Session(self.engine) as s:
            rows = s.exec(select(Lead).order_by(Lead.created_at.desc(), Lead.id.desc())).all()
            return [r.model_dump() for r in rows]

    def delete(self, lead_id: int):
        with Session(self.engine) as s:
            result = s.exec(sa_delete(Lead).where(Lead.id == lead_id))
            s.commit()
        if not result.rowcount:
            raise NotFound("Lead not found")
