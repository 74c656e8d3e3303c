"""
Модуль с моделями данных для базы данных.

Определяет таблицы ChatSession, ChatMessage и AgentProfile с использованием SQLModel.
"""
import datetime
import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel


class Department(str, Enum):
    DOCTOR = "doctor"
    PAYMENTS = "payments"


class ChatStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class SenderType(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"
    BOT = "bot"


def _new_chat_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Время всегда хранится и читается в UTC с tzinfo.

    SQLite не хранит смещение, поэтому прочитанное значение помечается UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return value.astimezone(datetime.timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return value


class ChatSession(SQLModel, table=True):
    """
    Модель сессии чата между клиентом и агентом отдела.
    """
    id: str = Field(default_factory=_new_chat_id, primary_key=True)
    customer_id: str = Field(index=True, description="Идентификатор клиента")
    agent_id: str = Field(description="ID агента, назначенного при создании")
    department: Department = Field(index=True, description="Отдел: doctor, payments")
    customer_language: str = Field(default="en", description="Предпочитаемый язык клиента")
    customer_name: Optional[str] = Field(default=None, description="Имя из анкеты бота")
    customer_phone: Optional[str] = Field(default=None, description="Телефон из анкеты бота")
    status: ChatStatus = Field(default=ChatStatus.OPEN, index=True, description="Статус: open, closed")
    created_at: datetime.datetime = Field(
        default_factory=utcnow,
        sa_type=UTCDateTime,
        index=True,
        description="Время создания сессии"
    )
    last_message_at: datetime.datetime = Field(
        default_factory=utcnow,
        sa_type=UTCDateTime,
        description="Время последнего сообщения"
    )
    closed_at: Optional[datetime.datetime] = Field(default=None, sa_type=UTCDateTime, description="Время закрытия сессии")


class ChatMessage(SQLModel, table=True):
    """
    Сообщение в журнале чата. Журнал только дополняется.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    chat_id: str = Field(foreign_key="chatsession.id", index=True)
    sender_id: str = Field(description="ID отправителя")
    sender_type: SenderType = Field(description="customer или agent")
    original_text: str = Field(description="Текст в том виде, в котором его набрал отправитель")
    translated_text: Optional[str] = Field(default=None, description="Перевод, сделанный при отправке")
    translated_language: Optional[str] = Field(default=None, description="Язык поля translated_text")
    timestamp: datetime.datetime = Field(
        default_factory=utcnow,
        sa_type=UTCDateTime,
        index=True,
        description="Время добавления в журнал"
    )


class AgentProfile(SQLModel, table=True):
    """
    Профиль агента поддержки.
    """
    agent_id: str = Field(primary_key=True, description="Telegram User ID агента")
    department: Department = Field(index=True)
    preferred_language: str = Field(default="en", description="Язык, на котором агент читает чат")
    is_active: bool = Field(default=True, index=True, description="Активен ли агент в системе")
