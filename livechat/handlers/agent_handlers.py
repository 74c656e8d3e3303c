"""
Обработчики для сообщений от агентов поддержки в личном чате с ботом.
"""

import logging
from typing import Union

from aiogram import Bot, F, Router
from aiogram.filters import BaseFilter, Command, CommandObject
from aiogram.types import CallbackQuery, Message

from livechat.core.config import settings
from livechat.core.exceptions import ChatClosedError, RepositoryError
from livechat.core.languages import get_language_name, is_supported, normalize_language, PICKER_LANGUAGES
from livechat.handlers.relay import ChatRelay, InboxRelay, RelayRegistry
from livechat.models.models import ChatStatus
from livechat.services import agent_service, session_service
from livechat.services.chat_repository import ChatRepository
from livechat.services.translation_service import TranslationGateway
from livechat.views.message_view import LiveMessageView, ViewerRole


class IsAgent(BaseFilter):
    """Пропускает только пользователей из таблицы отдел -> агент."""

    async def __call__(self, event: Union[Message, CallbackQuery]) -> bool:
        return event.from_user is not None and str(event.from_user.id) in settings.DEPARTMENT_AGENTS.values()


router = Router()
# Фильтруем сообщения: только личные чаты и только агенты из настроек
router.message.filter(F.chat.type == "private", IsAgent())
router.callback_query.filter(IsAgent())


def chat_key(user_id: int) -> tuple:
    return ("chat", user_id)


def inbox_key(user_id: int) -> tuple:
    return ("inbox", user_id)


@router.message(Command("start", "chats"))
async def handle_chats_command(message: Message, bot: Bot, repository: ChatRepository, relays: RelayRegistry):
    """
    Показывает живой список открытых чатов отдела агента.
    """
    agent_id = str(message.from_user.id)
    department = agent_service.get_department_for_agent(agent_id)
    logging.info(f"Agent {agent_id} opened the {department.value} chat list.")
    await relays.attach(inbox_key(message.from_user.id), InboxRelay(bot, message.chat.id, repository, department))


@router.callback_query(F.data == "inbox:refresh")
async def handle_inbox_refresh(callback: CallbackQuery, bot: Bot, repository: ChatRepository, relays: RelayRegistry):
    department = agent_service.get_department_for_agent(str(callback.from_user.id))
    await relays.attach(
        inbox_key(callback.from_user.id), InboxRelay(bot, callback.message.chat.id, repository, department)
    )
    await callback.answer()


@router.callback_query(F.data.startswith("open:"))
async def handle_open_chat(
    callback: CallbackQuery,
    bot: Bot,
    repository: ChatRepository,
    gateway: TranslationGateway,
    relays: RelayRegistry,
):
    """
    Подключает агента к выбранному чату.
    """
    agent_id = str(callback.from_user.id)
    chat_id = callback.data.split(":", 1)[1]

    try:
        chat = repository.get_session(chat_id)
    except RepositoryError as e:
        logging.error(f"Failed to load chat {chat_id} for agent {agent_id}: {e}")
        await callback.answer("🔴 Could not load the chat. Please try again.", show_alert=True)
        return

    if chat is None or chat.status == ChatStatus.CLOSED:
        await callback.answer("⚠️ This chat is no longer open.", show_alert=True)
        return

    # Проверяем, что чат назначен именно этому агенту
    if chat.agent_id != agent_id:
        await callback.answer("⛔️ This chat is assigned to another agent.", show_alert=True)
        return

    language = agent_service.get_preferred_language(repository, agent_id)
    view = LiveMessageView(repository, gateway, chat.id, agent_id, ViewerRole.AGENT, language)
    await relays.attach(chat_key(callback.from_user.id), ChatRelay(bot, callback.message.chat.id, view))

    who = chat.customer_name or f"User {chat.customer_id[:8]}"
    details = f"\n📞 {chat.customer_phone}" if chat.customer_phone else ""
    await callback.message.answer(
        f"💬 Chat with <b>{who}</b> ({chat.department.value}){details}\n"
        f"Customer language: {get_language_name(chat.customer_language)}. "
        f"You read in: {get_language_name(language)}.\n"
        "Reply with text. /close_chat to finish, /leave to go back, /lang &lt;code&gt; to change your language."
    )
    await callback.answer()


@router.message(Command("close_chat"))
async def handle_close_chat_command(message: Message, repository: ChatRepository, relays: RelayRegistry):
    """
    Обрабатывает команду /close_chat от агента для завершения сессии.
    """
    agent_id = str(message.from_user.id)
    relay = relays.get(chat_key(message.from_user.id))

    if not relay:
        await message.reply("⚠️ No chat is open. Use /chats to pick one.")
        return

    try:
        active_session = repository.get_session(relay.chat_id)
    except RepositoryError as e:
        logging.error(f"Failed to load chat {relay.chat_id} for agent {agent_id}: {e}")
        await message.reply("🔴 Could not load the chat. Please try again.")
        return
    if active_session is None or active_session.agent_id != agent_id:
        await message.reply("⛔️ You cannot close this chat because it is assigned to another agent.")
        return

    # Закрываем сессию через сервис
    success = session_service.close_session(repository, relay.chat_id)

    if success:
        # Клиент узнает о закрытии через свою подписку на статус чата
        await relays.detach(chat_key(message.from_user.id))
        await message.reply("✅ Chat closed. Use /chats to pick another one.")
    else:
        await message.reply("🔴 An error occurred while closing the chat. Please try again.")


@router.message(Command("leave"))
async def handle_leave_command(message: Message, relays: RelayRegistry):
    await relays.detach(chat_key(message.from_user.id))
    await message.reply("👋 You left the chat. It stays open. Use /chats to return.")


@router.message(Command("lang"))
async def handle_language_command(
    message: Message, command: CommandObject, repository: ChatRepository, relays: RelayRegistry
):
    """
    Меняет язык, на котором агент читает чаты.
    """
    language = normalize_language(command.args or "")
    if not is_supported(language):
        await message.reply(f"Usage: /lang &lt;code&gt;. Available: {', '.join(PICKER_LANGUAGES)}")
        return

    agent_id = str(message.from_user.id)
    persisted = agent_service.set_preferred_language(repository, agent_id, language)

    relay = relays.get(chat_key(message.from_user.id))
    if relay:
        relay.view.set_language(language)

    suffix = "" if persisted else " (saved on this device only, the profile store is unreachable)"
    await message.reply(f"🌐 You now read chats in {get_language_name(language)}{suffix}.")


@router.message(Command("stats"))
async def handle_stats_command(message: Message, repository: ChatRepository):
    """Сводка по чатам: количество по отделам и статусам."""
    try:
        counts = repository.count_sessions()
    except RepositoryError as e:
        logging.error(f"Failed to load chat statistics: {e}")
        await message.reply("🔴 Statistics are unavailable right now.")
        return

    lines = ["<b>Chats summary</b>"]
    for (department, status), total in sorted(counts.items(), key=lambda item: (item[0][0].value, item[0][1].value)):
        lines.append(f"{department.value}: {status.value} - {total}")
    if len(lines) == 1:
        lines.append("No chats yet.")
    await message.reply("\n".join(lines))


@router.message(F.text)
async def handle_agent_message(message: Message, relays: RelayRegistry):
    """
    Отправляет сообщение агента в открытый им чат.
    """
    relay = relays.get(chat_key(message.from_user.id))
    if not relay:
        await message.reply("⚠️ No chat is open. Use /chats to pick one.")
        return

    try:
        await relay.view.send(message.text)
    except ChatClosedError:
        await message.reply("🔒 This chat has been closed and no new messages can be sent.")
    except RepositoryError as e:
        logging.error(f"Failed to send agent message to chat {relay.chat_id}: {e}")
        await message.reply("🔴 <b>Message not sent!</b>\nThe chat service is unreachable. Please try again.")
