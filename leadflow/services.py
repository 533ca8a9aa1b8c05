"""
Service layer for database operations.
Conversations, their messages and booked appointments.
"""

from typing import List, Optional, Tuple
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from datetime import date, datetime, timedelta

from leadflow.db_models import (
    Appointment,
    AppointmentStatus,
    Conversation,
    ConversationMode,
    ConversationStatus,
    Message,
    MessageSender,
)
from leadflow.logging_config import get_logger

logger = get_logger(__name__)

# Conversation fields the AI may fill in. Only non-empty values are written.
UPDATABLE_FIELDS = ("customer_name", "vehicle", "city", "intention", "lead_temperature")


class ConversationService:
    """Service for managing conversations."""

    @staticmethod
    def get(db: Session, conversation_id: int) -> Optional[Conversation]:
        """Get conversation by ID."""
        return db.query(Conversation).filter(Conversation.id == conversation_id).first()

    @staticmethod
    def find_active_by_phone(db: Session, phone: str) -> Optional[Conversation]:
        """Get the active conversation for a phone number, if any."""
        return (
            db.query(Conversation)
            .filter(Conversation.phone_number == phone, Conversation.status == ConversationStatus.ACTIVE)
            .order_by(Conversation.created_at.desc())
            .first()
        )

    @staticmethod
    def create(
        db: Session, phone: str, assigned_to: Optional[str] = None, now: Optional[datetime] = None
    ) -> Conversation:
        """Create a new active AI-mode conversation."""
        now = now or datetime.now()
        conversation = Conversation(
            phone_number=phone,
            status=ConversationStatus.ACTIVE,
            mode=ConversationMode.AI,
            assigned_to=assigned_to,
            created_at=now,
            updated_at=now,
        )
        db.add(conversation)
        db.commit()
        db.refresh(conversation)

        logger.info("conversation_created", conversation_id=conversation.id, phone=phone)
        return conversation

    @staticmethod
    def find_or_create(
        db: Session, phone: str, assigned_to: Optional[str] = None, now: Optional[datetime] = None
    ) -> Tuple[Conversation, bool]:
        """
        Return the active conversation for `phone`, creating one if needed.

        The second value is True when a conversation was created. A concurrent
        creation for the same phone loses on the unique index; the winner's
        row is returned instead.
        """
        existing = ConversationService.find_active_by_phone(db, phone)
        if existing:
            return existing, False

        try:
            return ConversationService.create(db, phone, assigned_to=assigned_to, now=now), True
        except IntegrityError:
            db.rollback()
            logger.info("conversation_create_race", phone=phone)
            existing = ConversationService.find_active_by_phone(db, phone)
            if existing is None:
                raise
            return existing, False

    @staticmethod
    def update_fields(
        db: Session, conversation_id: int, now: Optional[datetime] = None, **fields
    ) -> Optional[Conversation]:
        """
        Partially update collected lead fields.

        Empty values (None, "") are ignored, so a known field is never cleared.
        `now` stamps `updated_at` when something changed.
        """
        conversation = ConversationService.get(db, conversation_id)
        if not conversation:
            return None

        changed = {}
        for name in UPDATABLE_FIELDS:
            value = fields.get(name)
            if value is None or value == "":
                continue
            if getattr(conversation, name) != value:
                setattr(conversation, name, value)
                changed[name] = value.value if hasattr(value, "value") else value

        if changed:
            conversation.updated_at = now or datetime.now()
            db.commit()
            db.refresh(conversation)
            logger.info("conversation_fields_updated", conversation_id=conversation_id, fields=sorted(changed))

        return conversation

    @staticmethod
    def set_mode(
        db: Session,
        conversation_id: int,
        mode: ConversationMode,
        assigned_to: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Conversation]:
        """Switch between AI and human handling."""
        conversation = ConversationService.get(db, conversation_id)
        if conversation:
            conversation.mode = mode
            conversation.assigned_to = assigned_to
            conversation.updated_at = now or datetime.now()
            db.commit()
            db.refresh(conversation)

            logger.info("conversation_mode_updated", conversation_id=conversation_id, mode=mode.value, assigned_to=assigned_to)

        return conversation

    @staticmethod
    def close(db: Session, conversation_id: int, now: Optional[datetime] = None) -> Optional[Conversation]:
        """Close a conversation."""
        conversation = ConversationService.get(db, conversation_id)
        if conversation:
            conversation.status = ConversationStatus.CLOSED
            conversation.updated_at = now or datetime.now()
            db.commit()
            db.refresh(conversation)

            logger.info("conversation_closed", conversation_id=conversation_id)

        return conversation

    @staticmethod
    def list_active(db: Session) -> List[Conversation]:
        """List active conversations, most recently updated first."""
        return (
            db.query(Conversation)
            .filter(Conversation.status == ConversationStatus.ACTIVE)
            .order_by(Conversation.updated_at.desc())
            .all()
        )

    @staticmethod
    def list_by_phone(db: Session, phone: str) -> List[Conversation]:
        """All conversations of a phone number, newest first."""
        return (
            db.query(Conversation)
            .filter(Conversation.phone_number == phone)
            .order_by(Conversation.created_at.desc())
            .all()
        )

    @staticmethod
    def list_idle_candidates(db: Session, marker: str) -> List[dict]:
        """
        Active AI-mode conversations with their last bot and customer message
        times and the number of bot messages carrying `marker`.
        """
        last_bot = (
            db.query(func.max(Message.created_at))
            .filter(Message.conversation_id == Conversation.id, Message.sender == MessageSender.BOT)
            .correlate(Conversation)
            .scalar_subquery()
        )
        last_customer = (
            db.query(func.max(Message.created_at))
            .filter(Message.conversation_id == Conversation.id, Message.sender == MessageSender.CUSTOMER)
            .correlate(Conversation)
            .scalar_subquery()
        )
        marker_count = (
            db.query(func.count(Message.id))
            .filter(
                Message.conversation_id == Conversation.id,
                Message.sender == MessageSender.BOT,
                Message.content.like(f"%{marker}%"),
            )
            .correlate(Conversation)
            .scalar_subquery()
        )

        rows = (
            db.query(Conversation, last_bot, last_customer, marker_count)
            .filter(Conversation.status == ConversationStatus.ACTIVE, Conversation.mode == ConversationMode.AI)
            .order_by(Conversation.updated_at.asc())
            .all()
        )
        return [
            {
                "conversation": conversation,
                "last_bot_at": bot_at,
                "last_customer_at": customer_at,
                "follow_up_count": count or 0,
            }
            for conversation, bot_at, customer_at, count in rows
        ]

    @staticmethod
    def list_expired(db: Session, older_than: datetime) -> List[Conversation]:
        """Active conversations not updated since `older_than`."""
        return (
            db.query(Conversation)
            .filter(Conversation.status == ConversationStatus.ACTIVE, Conversation.updated_at < older_than)
            .all()
        )

    @staticmethod
    def count_by_status(db: Session) -> dict:
        """Number of conversations per status and, for active ones, per mode."""
        counts = {status.value: 0 for status in ConversationStatus}
        for status, total in db.query(Conversation.status, func.count(Conversation.id)).group_by(Conversation.status):
            counts[status.value] = total

        modes = {mode.value: 0 for mode in ConversationMode}
        active_modes = (
            db.query(Conversation.mode, func.count(Conversation.id))
            .filter(Conversation.status == ConversationStatus.ACTIVE)
            .group_by(Conversation.mode)
        )
        for mode, total in active_modes:
            modes[mode.value] = total

        return {"by_status": counts, "active_by_mode": modes}


class MessageService:
    """Service for the append-only message log."""

    @staticmethod
    def add_message(
        db: Session,
        conversation_id: int,
        sender: MessageSender,
        content: str,
        created_at: Optional[datetime] = None,
    ) -> Message:
        """Append a message and bump the conversation's activity clock."""
        now = created_at or datetime.now()
        message = Message(conversation_id=conversation_id, sender=sender, content=content, created_at=now)
        db.add(message)

        conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if conversation:
            conversation.updated_at = now

        db.commit()
        db.refresh(message)

        logger.debug("message_added", conversation_id=conversation_id, sender=sender.value)
        return message

    @staticmethod
    def recent_messages(db: Session, conversation_id: int, limit: int = 15) -> List[Message]:
        """Last `limit` messages in chronological order."""
        newest_first = (
            db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .all()
        )
        return list(reversed(newest_first))

    @staticmethod
    def list_messages(db: Session, conversation_id: int) -> List[Message]:
        return (
            db.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc(), Message.id.asc())
            .all()
        )

    @staticmethod
    def has_bot_marker_since(db: Session, conversation_id: int, marker: str, since: datetime) -> bool:
        """True if a bot message containing `marker` was stored after `since`."""
        return (
            db.query(Message.id)
            .filter(
                Message.conversation_id == conversation_id,
                Message.sender == MessageSender.BOT,
                Message.content.like(f"%{marker}%"),
                Message.created_at > since,
            )
            .first()
            is not None
        )


class AppointmentService:
    """Service for managing appointments."""

    @staticmethod
    def create(
        db: Session,
        customer_name: str,
        phone: str,
        scheduled_date: date,
        scheduled_time: str,
        created_by: str,
        conversation_id: Optional[int] = None,
        vehicle: Optional[str] = None,
        city: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Appointment:
        """Create a new scheduled appointment."""
        now = now or datetime.now()
        appointment = Appointment(
            conversation_id=conversation_id,
            customer_name=customer_name,
            phone_number=phone,
            vehicle=vehicle,
            city=city,
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            status=AppointmentStatus.SCHEDULED,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)

        logger.info(
            "appointment_created",
            appointment_id=appointment.id,
            phone=phone,
            date=scheduled_date.isoformat(),
            time=scheduled_time,
        )
        return appointment

    @staticmethod
    def get(db: Session, appointment_id: int) -> Optional[Appointment]:
        return db.query(Appointment).filter(Appointment.id == appointment_id).first()

    @staticmethod
    def list_by_phone(db: Session, phone: str) -> List[Appointment]:
        """All appointments of a phone number, latest date first."""
        return (
            db.query(Appointment)
            .filter(Appointment.phone_number == phone)
            .order_by(Appointment.scheduled_date.desc())
            .all()
        )

    @staticmethod
    def set_sheets_row(
        db: Session, appointment_id: int, row_id: int, now: Optional[datetime] = None
    ) -> Optional[Appointment]:
        """Store the external calendar row reference."""
        appointment = AppointmentService.get(db, appointment_id)
        if appointment:
            appointment.sheets_row_id = row_id
            appointment.updated_at = now or datetime.now()
            db.commit()
            db.refresh(appointment)
        return appointment

    @staticmethod
    def list_appointments(db: Session, on_date: Optional[date] = None, limit: int = 50) -> List[Appointment]:
        """Appointments of one day by time, or the latest ones."""
        query = db.query(Appointment)
        if on_date:
            return query.filter(Appointment.scheduled_date == on_date).order_by(Appointment.scheduled_time.asc()).all()
        return (
            query.order_by(Appointment.scheduled_date.desc(), Appointment.scheduled_time.asc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def list_today(db: Session, today: Optional[date] = None) -> List[Appointment]:
        return AppointmentService.list_appointments(db, on_date=today or date.today())

    @staticmethod
    def list_no_show_candidates(db: Session, today: date, look_back_days: int = 2) -> List[Appointment]:
        """Still-scheduled appointments dated in [today - look_back_days, today)."""
        return (
            db.query(Appointment)
            .filter(
                Appointment.status == AppointmentStatus.SCHEDULED,
                Appointment.scheduled_date < today,
                Appointment.scheduled_date >= today - timedelta(days=look_back_days),
            )
            .order_by(Appointment.scheduled_date.asc(), Appointment.scheduled_time.asc())
            .all()
        )

    @staticmethod
    def mark_status(
        db: Session, appointment_id: int, status: AppointmentStatus, now: Optional[datetime] = None
    ) -> Optional[Appointment]:
        """Update appointment status."""
        appointment = AppointmentService.get(db, appointment_id)
        if appointment:
            appointment.status = status
            appointment.updated_at = now or datetime.now()
            db.commit()
            db.refresh(appointment)

            logger.info("appointment_status_updated", appointment_id=appointment_id, status=status.value)

        return appointment

    @staticmethod
    def count_by_status(db: Session) -> dict:
        counts = {status.value: 0 for status in AppointmentStatus}
        for status, total in db.query(Appointment.status, func.count(Appointment.id)).group_by(Appointment.status):
            counts[status.value] = total
        return counts


class StatsService:
    """Dashboard counters over conversations, appointments and messages."""

    @staticmethod
    def _grouped(db: Session, column, *filters) -> dict:
        query = db.query(column, func.count()).filter(*filters).group_by(column)
        return {(key.value if hasattr(key, "value") else key): total for key, total in query}

    @staticmethod
    def summary(db: Session, today: Optional[date] = None) -> dict:
        today = today or date.today()
        week_start = today - timedelta(days=today.weekday())
        week_end = week_start + timedelta(days=7)
        active = Conversation.status == ConversationStatus.ACTIVE

        conversation_counts = ConversationService.count_by_status(db)
        total_leads = sum(conversation_counts["by_status"].values())

        by_intention = {
            (key or "indefinida"): total
            for key, total in StatsService._grouped(db, Conversation.intention, active).items()
        }

        appointment_counts = AppointmentService.count_by_status(db)
        today_count = db.query(func.count(Appointment.id)).filter(Appointment.scheduled_date == today).scalar()
        week_count = (
            db.query(func.count(Appointment.id))
            .filter(Appointment.scheduled_date >= week_start, Appointment.scheduled_date < week_end)
            .scalar()
        )

        leads_with_appointment = (
            db.query(func.count(func.distinct(Appointment.conversation_id)))
            .filter(Appointment.conversation_id.isnot(None))
            .scalar()
        )
        rate = (leads_with_appointment / total_leads * 100) if total_leads else 0.0

        return {
            "leads": {
                "total": total_leads,
                "active": conversation_counts["by_status"][ConversationStatus.ACTIVE.value],
                "by_mode": conversation_counts["active_by_mode"],
                "by_temperature": StatsService._grouped(db, Conversation.lead_temperature, active),
                "by_intention": by_intention,
            },
            "appointments": {
                "total": sum(appointment_counts.values()),
                "today": today_count or 0,
                "this_week": week_count or 0,
                "by_status": appointment_counts,
                "no_shows": appointment_counts[AppointmentStatus.NO_SHOW.value],
            },
            "conversion": {
                "rate": f"{rate:.1f}%",
                "leads_with_appointment": leads_with_appointment or 0,
                "total_leads": total_leads,
            },
            "messages": {
                "total": db.query(func.count(Message.id)).scalar() or 0,
                "by_sender": StatsService._grouped(db, Message.sender),
            },
        }
