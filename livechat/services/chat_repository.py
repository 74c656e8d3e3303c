"""
Репозиторий чатов: сессии, журналы сообщений, профили агентов и живые подписки.
"""
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from livechat.core.exceptions import ChatClosedError, RepositoryError
from livechat.db.session import BackendContext, Subscription
from livechat.models.models import (
    AgentProfile,
    ChatMessage,
    ChatSession,
    ChatStatus,
    Department,
    SenderType,
    utcnow,
)


class ChatRepository:
    """
    Клиент хранилища чатов поверх BackendContext.

    Каждая операция открывает короткую сессию БД. Любая ошибка хранилища
    поднимается как RepositoryError, запись после коммита рассылается
    подпискам через шину изменений.
    """

    def __init__(self, backend: BackendContext):
        self._backend = backend

    @contextmanager
    def _session(self) -> Iterator[Session]:
        # Незакоммиченная транзакция откатывается при закрытии сессии
        try:
            with self._backend.session() as session:
                yield session
        except SQLAlchemyError as e:
            logging.error(f"Repository operation failed: {e}")
            raise RepositoryError(str(e)) from e

    # --- Сессии чата ---

    def create_session(
        self,
        customer_id: str,
        agent_id: str,
        department: Department,
        language: str,
        customer_name: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> ChatSession:
        now = utcnow()
        chat = ChatSession(
            customer_id=customer_id,
            agent_id=agent_id,
            department=Department(department),
            customer_language=language,
            customer_name=customer_name,
            customer_phone=customer_phone,
            status=ChatStatus.OPEN,
            created_at=now,
            last_message_at=now,
        )
        with self._session() as session:
            session.add(chat)
            session.commit()
            session.refresh(chat)
        logging.info(f"Chat {chat.id} created for customer {customer_id} ({chat.department.value}).")
        self._backend.hub.publish(chat)
        return chat

    def get_session(self, chat_id: str) -> Optional[ChatSession]:
        with self._session() as session:
            return session.get(ChatSession, chat_id)

    def find_open_session(
        self, customer_id: str, department: Department, language: Optional[str] = None
    ) -> Optional[ChatSession]:
        """Самая новая открытая сессия клиента в отделе (и на языке, если он задан)."""
        statement = select(ChatSession).where(
            ChatSession.customer_id == customer_id,
            ChatSession.department == Department(department),
            ChatSession.status == ChatStatus.OPEN,
        )
        if language:
            statement = statement.where(ChatSession.customer_language == language)
        statement = statement.order_by(col(ChatSession.created_at).desc())
        with self._session() as session:
            return session.exec(statement).first()

    def list_open_sessions(self, department: Department) -> List[ChatSession]:
        statement = (
            select(ChatSession)
            .where(
                ChatSession.department == Department(department),
                ChatSession.status == ChatStatus.OPEN,
            )
            .order_by(col(ChatSession.created_at).desc())
        )
        with self._session() as session:
            return list(session.exec(statement).all())

    def update_session_status(self, chat_id: str, status: ChatStatus) -> ChatSession:
        status = ChatStatus(status)
        with self._session() as session:
            chat = session.get(ChatSession, chat_id)
            if chat is None:
                raise RepositoryError(f"Chat {chat_id} not found.")
            if chat.status == status:
                return chat
            if chat.status == ChatStatus.CLOSED:
                raise ChatClosedError(f"Chat {chat_id} is closed and cannot be reopened.")
            chat.status = status
            chat.closed_at = utcnow()
            session.add(chat)
            session.commit()
            session.refresh(chat)
        self._backend.hub.publish(chat)
        return chat

    def update_session_language(self, chat_id: str, language: str) -> ChatSession:
        with self._session() as session:
            chat = session.get(ChatSession, chat_id)
            if chat is None:
                raise RepositoryError(f"Chat {chat_id} not found.")
            chat.customer_language = language
            session.add(chat)
            session.commit()
            session.refresh(chat)
        self._backend.hub.publish(chat)
        return chat

    def count_sessions(self) -> Dict[Tuple[Department, ChatStatus], int]:
        """Количество сессий по отделу и статусу для сводки администратора."""
        statement = select(ChatSession.department, ChatSession.status, func.count()).group_by(
            ChatSession.department, ChatSession.status
        )
        with self._session() as session:
            return {(department, status): total for department, status, total in session.exec(statement)}

    # --- Сообщения ---

    def append_message(
        self,
        chat_id: str,
        sender_id: str,
        sender_type: SenderType,
        text: str,
        translated_text: Optional[str] = None,
        translated_language: Optional[str] = None,
    ) -> ChatMessage:
        """
        Добавляет сообщение в журнал и обновляет last_message_at сессии.

        Время сообщения не меньше времени предыдущего, поэтому порядок
        (timestamp, id) совпадает с порядком отправки.
        """
        sender_type = SenderType(sender_type)
        if sender_type == SenderType.BOT:
            raise ValueError("Bot messages are local to the pre-chat flow and are never stored.")
        with self._session() as session:
            chat = session.get(ChatSession, chat_id)
            if chat is None:
                raise RepositoryError(f"Chat {chat_id} not found.")
            timestamp = max(utcnow(), chat.last_message_at)
            message = ChatMessage(
                chat_id=chat_id,
                sender_id=sender_id,
                sender_type=sender_type,
                original_text=text,
                translated_text=translated_text,
                translated_language=translated_language,
                timestamp=timestamp,
            )
            chat.last_message_at = timestamp
            session.add(message)
            session.add(chat)
            session.commit()
            session.refresh(message)
            session.refresh(chat)
        self._backend.hub.publish(message)
        self._backend.hub.publish(chat)
        return message

    def list_messages(self, chat_id: str) -> List[ChatMessage]:
        statement = (
            select(ChatMessage)
            .where(ChatMessage.chat_id == chat_id)
            .order_by(col(ChatMessage.timestamp), col(ChatMessage.id))
        )
        with self._session() as session:
            return list(session.exec(statement).all())

    # --- Профили агентов ---

    def get_agent_profile(self, agent_id: str) -> Optional[AgentProfile]:
        with self._session() as session:
            return session.get(AgentProfile, agent_id)

    def list_agent_profiles(self) -> List[AgentProfile]:
        with self._session() as session:
            return list(session.exec(select(AgentProfile)).all())

    def save_agent_profile(self, profile: AgentProfile) -> AgentProfile:
        with self._session() as session:
            profile = session.merge(profile)
            session.commit()
            session.refresh(profile)
        return profile

    # --- Подписки ---

    def subscribe(
        self,
        predicate: Callable[[Any], bool],
        loader: Callable[[], list],
        on_change: Callable[[list], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        """
        Подписка на изменения документов, для которых predicate истинен.

        Сразу отдает текущий результат loader, затем отдает его заново
        после каждой подходящей записи.
        """
        subscription = Subscription(self._backend.hub, predicate, loader, on_change, on_error)
        self._backend.hub.add(subscription)
        subscription.refresh()
        return subscription

    def subscribe_messages(
        self,
        chat_id: str,
        on_change: Callable[[List[ChatMessage]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        return self.subscribe(
            lambda doc: isinstance(doc, ChatMessage) and doc.chat_id == chat_id,
            lambda: self.list_messages(chat_id),
            on_change,
            on_error,
        )

    def subscribe_session(
        self,
        chat_id: str,
        on_change: Callable[[List[ChatSession]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        def load() -> List[ChatSession]:
            chat = self.get_session(chat_id)
            return [chat] if chat else []

        return self.subscribe(
            lambda doc: isinstance(doc, ChatSession) and doc.id == chat_id,
            load,
            on_change,
            on_error,
        )

    def subscribe_open_sessions(
        self,
        department: Department,
        on_change: Callable[[List[ChatSession]], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> Subscription:
        department = Department(department)
        # Фильтр только по отделу: закрытие сессии тоже должно обновить список
        return self.subscribe(
            lambda doc: isinstance(doc, ChatSession) and doc.department == department,
            lambda: self.list_open_sessions(department),
            on_change,
            on_error,
        )
