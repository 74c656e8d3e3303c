"""
Сервис для управления жизненным циклом сессий чата.
"""
import logging
from typing import Callable, Dict, List, Optional

from livechat.core.config import settings
from livechat.core.exceptions import ChatClosedError, RepositoryError
from livechat.db.session import Subscription
from livechat.models.models import ChatSession, ChatStatus, Department
from livechat.services import agent_service
from livechat.services.chat_repository import ChatRepository


def resolve_customer_session(
    repository: ChatRepository,
    customer_id: str,
    department: Department,
    language: Optional[str] = None,
    customer_name: Optional[str] = None,
    customer_phone: Optional[str] = None,
    department_agents: Optional[Dict[str, str]] = None,
) -> ChatSession:
    """
    Находит открытую сессию клиента в отделе или создает новую.

    1. Ищет открытую сессию по клиенту и отделу (и по языку, если он передан).
    2. Если сессия найдена, возвращает ее без изменений.
    3. Иначе назначает агента по таблице отдел -> агент и создает сессию.

    Проверка и создание не атомарны: два почти одновременных обращения
    одного клиента могут создать две открытые сессии.

    :raises ConfigurationError: Для отдела не настроен агент.
    :raises RepositoryError: Хранилище недоступно.
    """
    department = Department(department)
    logging.info(f"Resolving chat for customer {customer_id} in {department.value} ({language or 'any language'})")

    existing = repository.find_open_session(customer_id, department, language)
    if existing:
        logging.info(f"Reusing open chat {existing.id} for customer {customer_id}.")
        return existing

    agent_id = agent_service.get_agent_for_department(department, department_agents)
    new_session = repository.create_session(
        customer_id=customer_id,
        agent_id=agent_id,
        department=department,
        language=language or settings.DEFAULT_LANGUAGE,
        customer_name=customer_name,
        customer_phone=customer_phone,
    )
    logging.info(f"New chat {new_session.id} assigned to agent {agent_id}.")
    return new_session


def subscribe_department_sessions(
    repository: ChatRepository,
    department: Department,
    on_change: Callable[[List[ChatSession]], None],
    on_error: Optional[Callable[[Exception], None]] = None,
) -> Subscription:
    """Живой список открытых сессий отдела, новые сверху. Сессии не создает."""
    return repository.subscribe_open_sessions(department, on_change, on_error)


def close_session(repository: ChatRepository, chat_id: str) -> bool:
    """
    Закрывает сессию. Закрытие окончательное.

    :return: True, если сессия закрыта (или уже была закрыта), иначе False.
    """
    logging.info(f"Attempting to close chat {chat_id}")
    try:
        repository.update_session_status(chat_id, ChatStatus.CLOSED)
    except RepositoryError as e:
        logging.error(f"Failed to close chat {chat_id}: {e}")
        return False
    logging.info(f"Chat {chat_id} has been closed.")
    return True


def change_customer_language(repository: ChatRepository, chat_id: str, language: str) -> ChatSession:
    """
    Меняет язык клиента в открытой сессии.

    Новые сообщения агента будут переводиться на этот язык при отправке.
    """
    chat = repository.get_session(chat_id)
    if chat is None:
        raise RepositoryError(f"Chat {chat_id} not found.")
    if chat.status == ChatStatus.CLOSED:
        raise ChatClosedError(f"Chat {chat_id} is closed.")
    return repository.update_session_language(chat_id, language)
