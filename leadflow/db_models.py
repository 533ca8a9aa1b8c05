"""
SQLAlchemy database models.
Conversations, their append-only messages, and booked appointments.
"""

from sqlalchemy import Column, Integer, String, Date, DateTime, ForeignKey, Text, Index, text, Enum as SQLEnum
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from leadflow.database import Base


class ConversationStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class ConversationMode(str, enum.Enum):
    AI = "ai"
    HUMAN = "human"


class MessageSender(str, enum.Enum):
    CUSTOMER = "customer"
    BOT = "bot"
    AGENT = "agent"


class Intention(str, enum.Enum):
    """What the lead wants to do with the vehicle. NULL in the database means unset."""
    SELL = "sell"
    BUY = "buy"
    TRADE = "trade"
    APPRAISE = "appraise"


class LeadTemperature(str, enum.Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    RESCHEDULED = "rescheduled"


def _enum(enum_cls):
    # Store enum values ("active"), not member names ("ACTIVE").
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


class Conversation(Base):
    """
    One conversation per phone number and open window.
    At most one row per phone may be active at a time.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        Index(
            "uq_conversations_active_phone",
            "phone_number",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    phone_number = Column(String(30), nullable=False, index=True)
    status = Column(_enum(ConversationStatus), nullable=False, default=ConversationStatus.ACTIVE)
    mode = Column(_enum(ConversationMode), nullable=False, default=ConversationMode.AI)
    assigned_to = Column(String(100))

    # Collected lead data
    customer_name = Column(String(200))
    vehicle = Column(String(200))
    city = Column(String(200))
    intention = Column(_enum(Intention), nullable=True)
    lead_temperature = Column(_enum(LeadTemperature), nullable=False, default=LeadTemperature.WARM)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # Relationships
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.created_at",
    )
    appointments = relationship("Appointment", back_populates="conversation", passive_deletes=True)

    @property
    def is_qualified(self) -> bool:
        """A lead is qualified once both name and vehicle are known."""
        return bool(self.customer_name and self.vehicle)


class Message(Base):
    """Immutable message; never updated or deleted on its own."""
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    sender = Column(_enum(MessageSender), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=datetime.now, index=True)

    conversation = relationship("Conversation", back_populates="messages")


class Appointment(Base):
    """
    A booked slot. The conversation link is cleared if the conversation is
    deleted; the appointment itself survives.
    """
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id", ondelete="SET NULL"), nullable=True)
    customer_name = Column(String(200), nullable=False)
    phone_number = Column(String(30), nullable=False, index=True)
    vehicle = Column(String(200))
    city = Column(String(200))
    scheduled_date = Column(Date, nullable=False, index=True)
    scheduled_time = Column(String(5), nullable=False)  # "HH:MM"
    status = Column(_enum(AppointmentStatus), nullable=False, default=AppointmentStatus.SCHEDULED)
    created_by = Column(String(100), nullable=False)
    sheets_row_id = Column(Integer, nullable=True)  # external calendar row reference

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    conversation = relationship("Conversation", back_populates="appointments")
