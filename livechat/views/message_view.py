"""
Живое представление переписки для одного зрителя (клиента или агента).

Представление владеет двумя подписками (статус сессии и поток сообщений)
и освобождает их вместе в close(). Для каждого сообщения выбирается текст:
сохраненный перевод на язык зрителя -> перевод из кэша -> оригинал.
"""
import datetime
import logging
from contextlib import ExitStack
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from livechat.core.config import settings
from livechat.core.exceptions import ChatClosedError
from livechat.models.models import ChatMessage, ChatSession, ChatStatus, SenderType
from livechat.services import message_service
from livechat.services.chat_repository import ChatRepository
from livechat.services.translation_cache import TranslationCache
from livechat.services.translation_service import TranslationGateway


class ViewerRole(str, Enum):
    CUSTOMER = "customer"
    AGENT = "agent"


class TextSource(str, Enum):
    PERSISTED = "persisted"
    CACHE = "cache"
    ORIGINAL = "original"


@dataclass
class RenderedMessage:
    message_id: int
    sender_type: SenderType
    text: str
    source: TextSource
    is_own: bool
    timestamp: datetime.datetime


class LiveMessageView:
    def __init__(
        self,
        repository: ChatRepository,
        gateway: TranslationGateway,
        chat_id: str,
        viewer_id: str,
        role: ViewerRole,
        language: str,
        on_render: Optional[Callable[["LiveMessageView"], None]] = None,
        scroll_threshold: Optional[int] = None,
    ):
        self.repository = repository
        self.gateway = gateway
        self.chat_id = chat_id
        self.viewer_id = viewer_id
        self.role = ViewerRole(role)
        self.on_render = on_render
        self.scroll_threshold = settings.SCROLL_THRESHOLD if scroll_threshold is None else scroll_threshold
        self.cache = TranslationCache(gateway, language, on_ready=self._on_translation_ready)

        self.chat: Optional[ChatSession] = None
        self.messages: List[ChatMessage] = []
        self.rendered: List[RenderedMessage] = []
        self.error: Optional[Exception] = None

        # Состояние прокрутки
        self.near_bottom = True
        self.show_scroll_button = False
        self.autoscroll = False

        self._subscriptions: Optional[ExitStack] = None

    # --- Жизненный цикл ---

    def open(self) -> "LiveMessageView":
        if self._subscriptions is not None:
            return self
        stack = ExitStack()
        stack.enter_context(self.repository.subscribe_session(self.chat_id, self._on_session, self._on_error))
        stack.enter_context(self.repository.subscribe_messages(self.chat_id, self._on_messages, self._on_error))
        self._subscriptions = stack
        logging.info(f"{self.role.value.title()} {self.viewer_id} opened chat {self.chat_id}.")
        return self

    def close(self) -> None:
        if self._subscriptions is not None:
            self._subscriptions.close()
            self._subscriptions = None
            logging.info(f"{self.role.value.title()} {self.viewer_id} left chat {self.chat_id}.")

    @property
    def is_open(self) -> bool:
        return self._subscriptions is not None

    def __enter__(self) -> "LiveMessageView":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    # --- Состояние чата ---

    @property
    def language(self) -> str:
        return self.cache.language

    @property
    def is_closed(self) -> bool:
        return self.chat is not None and self.chat.status == ChatStatus.CLOSED

    @property
    def can_send(self) -> bool:
        return self.chat is not None and not self.is_closed

    # --- Обработчики подписок ---

    def _on_session(self, rows: List[ChatSession]) -> None:
        self.chat = rows[0] if rows else None
        self.render()

    def _on_messages(self, rows: List[ChatMessage]) -> None:
        self.messages = rows
        self.render(stream_update=True)

    def _on_error(self, error: Exception) -> None:
        logging.error(f"Live updates for chat {self.chat_id} stopped: {error}")
        self.error = error
        self.render()

    def _on_translation_ready(self) -> None:
        if self.cache.drain():
            self.render()

    # --- Отрисовка ---

    def resolve(self, message: ChatMessage) -> RenderedMessage:
        key = str(message.id)
        is_own = message.sender_id == self.viewer_id
        if message.translated_text and message.translated_language == self.language:
            text, source = message.translated_text, TextSource.PERSISTED
        elif self.cache.get(key) is not None:
            text, source = self.cache.get(key), TextSource.CACHE
        elif is_own and self.cache.generation == 0:
            # Свои сообщения написаны на языке зрителя, пока он его не сменил
            text, source = message.original_text, TextSource.ORIGINAL
        else:
            # Оригинал показывается сразу, перевод подставится при следующей отрисовке
            self.cache.request(key, message.original_text)
            text, source = message.original_text, TextSource.ORIGINAL
        return RenderedMessage(
            message_id=message.id,
            sender_type=message.sender_type,
            text=text,
            source=source,
            is_own=is_own,
            timestamp=message.timestamp,
        )

    def render(self, stream_update: bool = False) -> List[RenderedMessage]:
        self.rendered = [self.resolve(message) for message in self.messages]
        if stream_update:
            if self.near_bottom:
                self.autoscroll = True
                self.show_scroll_button = False
            else:
                self.show_scroll_button = True
        if self.on_render:
            self.on_render(self)
        return self.rendered

    def set_language(self, language: str) -> None:
        """Смена языка зрителя: кэш сбрасывается, переводы запрашиваются заново."""
        if self.cache.set_language(language):
            self.render()

    # --- Прокрутка ---

    def on_scroll(self, offset: float, viewport_height: float, content_height: float) -> None:
        self.near_bottom = offset + viewport_height >= content_height - self.scroll_threshold
        self.show_scroll_button = not self.near_bottom
        self.autoscroll = False

    def scroll_to_latest(self) -> None:
        self.near_bottom = True
        self.show_scroll_button = False
        self.autoscroll = True

    # --- Отправка ---

    async def send(self, text: str) -> ChatMessage:
        """
        Отправляет сообщение от имени зрителя.

        :raises ChatClosedError: Чат закрыт; в хранилище ничего не пишется.
        """
        if self.chat is None or self.is_closed:
            raise ChatClosedError(f"Chat {self.chat_id} is closed and no new messages can be sent.")
        sender_type = SenderType.CUSTOMER if self.role == ViewerRole.CUSTOMER else SenderType.AGENT
        message = await message_service.send_message(
            self.repository, self.gateway, self.chat_id, self.viewer_id, sender_type, text
        )
        self.scroll_to_latest()
        return message
