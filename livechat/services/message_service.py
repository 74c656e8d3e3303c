"""
Сервис отправки сообщений в чат.
"""
import logging
from typing import Optional

from livechat.core.exceptions import ChatClosedError, RepositoryError
from livechat.models.models import ChatMessage, ChatSession, ChatStatus, SenderType
from livechat.services import agent_service
from livechat.services.chat_repository import ChatRepository
from livechat.services.translation_service import TranslationGateway


def ensure_open(chat: Optional[ChatSession], chat_id: str) -> ChatSession:
    """
    Проверяет, что в чат можно писать. Вызывается до любой записи в хранилище.

    :raises RepositoryError: Чат не найден.
    :raises ChatClosedError: Чат закрыт.
    """
    if chat is None:
        raise RepositoryError(f"Chat {chat_id} not found.")
    if chat.status == ChatStatus.CLOSED:
        raise ChatClosedError(f"Chat {chat_id} is closed and no new messages can be sent.")
    return chat


async def send_message(
    repository: ChatRepository,
    gateway: TranslationGateway,
    chat_id: str,
    sender_id: str,
    sender_type: SenderType,
    text: str,
) -> ChatMessage:
    """
    Отправляет сообщение в чат.

    1. Отклоняет пустой текст и запись в закрытый чат.
    2. Сообщение агента один раз переводится на язык клиента, перевод
       сохраняется вместе с сообщением.
    3. Добавляет сообщение в журнал.

    Ошибка перевода не мешает отправке: сообщение уходит без перевода.

    :raises ValueError: Пустое сообщение.
    :raises ChatClosedError: Чат закрыт.
    :raises RepositoryError: Хранилище недоступно, сообщение не отправлено.
    """
    sender_type = SenderType(sender_type)
    if not text or not text.strip():
        raise ValueError("Cannot send an empty message.")

    chat = ensure_open(repository.get_session(chat_id), chat_id)

    translated_text = None
    translated_language = None
    if sender_type == SenderType.AGENT:
        agent_language = agent_service.get_preferred_language(repository, sender_id)
        result = await gateway.translate(text, chat.customer_language, agent_language)
        if result.ok:
            translated_text = result.translated_text
            translated_language = chat.customer_language
        else:
            logging.warning(f"Agent message in chat {chat_id} is sent untranslated: {result.error}")

    message = repository.append_message(
        chat_id=chat_id,
        sender_id=sender_id,
        sender_type=sender_type,
        text=text,
        translated_text=translated_text,
        translated_language=translated_language,
    )
    logging.info(f"Message {message.id} from {sender_type.value} {sender_id} added to chat {chat_id}.")
    return message


async def send_customer_message(
    repository: ChatRepository, gateway: TranslationGateway, chat_id: str, customer_id: str, text: str
) -> ChatMessage:
    return await send_message(repository, gateway, chat_id, customer_id, SenderType.CUSTOMER, text)


async def send_agent_message(
    repository: ChatRepository, gateway: TranslationGateway, chat_id: str, agent_id: str, text: str
) -> ChatMessage:
    return await send_message(repository, gateway, chat_id, agent_id, SenderType.AGENT, text)
