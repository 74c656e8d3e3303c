"""
Отрисовка живых представлений в чатах Telegram.

Relay подписывается на представление и отправляет новые сообщения
собеседника, а при появлении перевода редактирует уже отправленное
сообщение. Все relay пользователя хранятся в RelayRegistry и
освобождаются вместе с подписками при уходе из чата или остановке бота.
"""
import asyncio
import logging
from typing import Callable, Dict, Hashable, List, Optional, Set, Tuple

from aiogram import Bot, html
from aiogram.exceptions import TelegramAPIError
from aiogram.types import InlineKeyboardMarkup

from livechat.db.session import Subscription
from livechat.handlers.keyboards import inbox_keyboard
from livechat.models.models import ChatSession, Department
from livechat.services import session_service
from livechat.services.bot_flow import BotMessage
from livechat.services.chat_repository import ChatRepository
from livechat.services.translation_cache import TranslationCache
from livechat.services.translation_service import TranslationGateway
from livechat.views.message_view import LiveMessageView, RenderedMessage, ViewerRole


class _TaskOwner:
    """Держит ссылки на фоновые задачи, чтобы их не собрал GC."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        while True:
            in_flight = [task for task in self._tasks if not task.done()]
            if not in_flight:
                break
            await asyncio.gather(*in_flight)


class ChatRelay(_TaskOwner):
    """Показывает LiveMessageView в личном чате Telegram участника."""

    def __init__(
        self,
        bot: Bot,
        telegram_chat_id: int,
        view: LiveMessageView,
        on_closed: Optional[Callable[["ChatRelay"], None]] = None,
    ):
        super().__init__()
        self.bot = bot
        self.telegram_chat_id = telegram_chat_id
        self.view = view
        self.view.on_render = self._on_render
        self.on_closed = on_closed
        self._sent: Dict[int, Tuple[int, str]] = {}
        self._announced_closed = False
        self._lock = asyncio.Lock()

    @property
    def chat_id(self) -> str:
        return self.view.chat_id

    def start(self) -> "ChatRelay":
        self.view.open()
        return self

    async def stop(self) -> None:
        self.view.close()
        await self.wait_idle()

    def _on_render(self, view: LiveMessageView) -> None:
        self._spawn(self.sync())

    def _label(self, rendered: RenderedMessage) -> str:
        sender = "Customer" if self.view.role == ViewerRole.AGENT else "Agent"
        return f"<b>{sender}:</b> {html.quote(rendered.text)}"

    async def sync(self) -> None:
        """Доводит чат Telegram до текущего состояния представления."""
        async with self._lock:
            for rendered in list(self.view.rendered):
                # Свои сообщения пользователь уже видит в Telegram
                if rendered.is_own:
                    continue
                text = self._label(rendered)
                try:
                    if rendered.message_id not in self._sent:
                        sent = await self.bot.send_message(chat_id=self.telegram_chat_id, text=text)
                        self._sent[rendered.message_id] = (sent.message_id, text)
                    elif self._sent[rendered.message_id][1] != text:
                        telegram_message_id = self._sent[rendered.message_id][0]
                        await self.bot.edit_message_text(
                            text=text, chat_id=self.telegram_chat_id, message_id=telegram_message_id
                        )
                        self._sent[rendered.message_id] = (telegram_message_id, text)
                except TelegramAPIError as e:
                    logging.error(f"Failed to deliver message {rendered.message_id} to {self.telegram_chat_id}: {e}")

            if self.view.is_closed and not self._announced_closed:
                self._announced_closed = True
                try:
                    await self.bot.send_message(
                        chat_id=self.telegram_chat_id,
                        text="✅ This chat has been closed. No new messages can be sent.",
                    )
                except TelegramAPIError as e:
                    logging.error(f"Failed to announce closing of chat {self.chat_id}: {e}")
                if self.on_closed:
                    # Закрытый чат больше не меняется, подписки не нужны
                    self.view.close()
                    self.on_closed(self)


class InboxRelay(_TaskOwner):
    """Живой список открытых чатов отдела в одном сообщении агента."""

    def __init__(self, bot: Bot, telegram_chat_id: int, repository: ChatRepository, department: Department):
        super().__init__()
        self.bot = bot
        self.telegram_chat_id = telegram_chat_id
        self.repository = repository
        self.department = Department(department)
        self.sessions: List[ChatSession] = []
        self._message_id: Optional[int] = None
        self._subscription: Optional[Subscription] = None
        self._lock = asyncio.Lock()

    def start(self) -> "InboxRelay":
        self._subscription = session_service.subscribe_department_sessions(
            self.repository, self.department, self._on_change, self._on_error
        )
        return self

    async def stop(self) -> None:
        if self._subscription:
            self._subscription.unsubscribe()
            self._subscription = None
        await self.wait_idle()

    def _on_change(self, sessions: List[ChatSession]) -> None:
        self.sessions = sessions
        self._spawn(self.sync())

    def _on_error(self, error: Exception) -> None:
        self._subscription = None
        self._spawn(self._notify_stopped())

    async def _notify_stopped(self) -> None:
        try:
            await self.bot.send_message(
                chat_id=self.telegram_chat_id,
                text="🔴 Live chat list stopped updating. Send /chats to reload it.",
            )
        except TelegramAPIError as e:
            logging.error(f"Failed to notify agent {self.telegram_chat_id}: {e}")

    def render(self) -> Tuple[str, InlineKeyboardMarkup]:
        title = f"<b>Open chats - {self.department.value.upper()}</b>"
        if not self.sessions:
            return f"{title}\nNo open chats right now.", inbox_keyboard([])
        return f"{title}\nSelect a chat to open it:", inbox_keyboard(self.sessions)

    async def sync(self) -> None:
        text, keyboard = self.render()
        async with self._lock:
            try:
                if self._message_id is None:
                    sent = await self.bot.send_message(
                        chat_id=self.telegram_chat_id, text=text, reply_markup=keyboard
                    )
                    self._message_id = sent.message_id
                else:
                    await self.bot.edit_message_text(
                        text=text,
                        chat_id=self.telegram_chat_id,
                        message_id=self._message_id,
                        reply_markup=keyboard,
                    )
            except TelegramAPIError as e:
                logging.error(f"Failed to update chat list for {self.telegram_chat_id}: {e}")


class BotPromptRenderer(_TaskOwner):
    """
    Отправляет сообщения сценария бота на выбранном языке.

    Сначала уходит английский текст, перевод подставляется правкой сообщения.
    Перевод кэшируется по id сообщения бота.
    """

    SOURCE_LANGUAGE = "en"

    def __init__(self, bot: Bot, telegram_chat_id: int, gateway: TranslationGateway, language: str = "en"):
        super().__init__()
        self.bot = bot
        self.telegram_chat_id = telegram_chat_id
        self.cache = TranslationCache(gateway, language, on_ready=self._on_ready)
        self._sent: Dict[str, Tuple[int, Optional[InlineKeyboardMarkup], str]] = {}

    def start(self) -> "BotPromptRenderer":
        return self

    async def stop(self) -> None:
        await self.cache.settle()
        await self.wait_idle()

    def set_language(self, language: str) -> None:
        self.cache.set_language(language)

    async def show(self, message: BotMessage, reply_markup: Optional[InlineKeyboardMarkup] = None) -> None:
        text = self.cache.get(message.id)
        if text is None:
            text = message.text
            if self.cache.language != self.SOURCE_LANGUAGE:
                self.cache.request(message.id, message.text, source_language=self.SOURCE_LANGUAGE)
        sent = await self.bot.send_message(chat_id=self.telegram_chat_id, text=text, reply_markup=reply_markup)
        self._sent[message.id] = (sent.message_id, reply_markup, text)
        # Перевод мог прийти, пока сообщение отправлялось
        self.cache.drain()
        translated = self.cache.get(message.id)
        if translated is not None and translated != text:
            self._spawn(self._replace(message.id, translated))

    def _on_ready(self) -> None:
        for key in self.cache.drain():
            if key in self._sent and self._sent[key][2] != self.cache.get(key):
                self._spawn(self._replace(key, self.cache.get(key)))

    async def _replace(self, key: str, text: str) -> None:
        telegram_message_id, reply_markup, current = self._sent[key]
        if current == text:
            return
        self._sent[key] = (telegram_message_id, reply_markup, text)
        try:
            await self.bot.edit_message_text(
                text=text, chat_id=self.telegram_chat_id, message_id=telegram_message_id, reply_markup=reply_markup
            )
        except TelegramAPIError as e:
            logging.warning(f"Could not replace bot prompt {key} with translation: {e}")


class RelayRegistry:
    """Активные relay по ключу (обычно Telegram ID пользователя и вид relay)."""

    def __init__(self):
        self._relays: Dict[Hashable, object] = {}

    def get(self, key: Hashable):
        return self._relays.get(key)

    async def attach(self, key: Hashable, relay):
        """Регистрирует relay, предварительно остановив прежний с тем же ключом."""
        await self.detach(key)
        self._relays[key] = relay.start()
        return relay

    async def detach(self, key: Hashable) -> None:
        relay = self._relays.pop(key, None)
        if relay is not None:
            await relay.stop()

    def discard(self, key: Hashable, relay) -> None:
        """Убирает relay, который уже освободил подписки сам. Более новый relay с тем же ключом не трогается."""
        if self._relays.get(key) is relay:
            del self._relays[key]

    async def close_all(self) -> None:
        for key in list(self._relays):
            await self.detach(key)
        logging.info("All live relays stopped.")

    def __len__(self) -> int:
        return len(self._relays)
