"""
Обработчики для сообщений от клиентов.

Клиент проходит сценарий бота (имя, телефон, язык, отдел), после чего
подключается к сессии чата. Состояние сценария хранится в FSM aiogram.
"""

import logging
from typing import Optional

from aiogram import Bot, F, Router
from aiogram.filters import Command, CommandStart
from aiogram.fsm.context import FSMContext
from aiogram.types import CallbackQuery, InlineKeyboardMarkup, Message

from livechat.core.exceptions import ChatClosedError, ConfigurationError, InvalidTransitionError, RepositoryError
from livechat.core.languages import get_language_name
from livechat.handlers import keyboards
from livechat.handlers.relay import BotPromptRenderer, ChatRelay, RelayRegistry
from livechat.models.models import ChatStatus
from livechat.services import session_service
from livechat.services.bot_flow import BotEvent, BotState, PreChatFlow
from livechat.services.chat_repository import ChatRepository
from livechat.services.translation_service import TranslationGateway
from livechat.views.message_view import LiveMessageView, ViewerRole

router = Router()
router.message.filter(F.chat.type == "private")

def chat_key(user_id: int) -> tuple:
    return ("chat", user_id)


def prompt_key(user_id: int) -> tuple:
    return ("prompt", user_id)


async def get_renderer(
    relays: RelayRegistry, bot: Bot, user_id: int, gateway: TranslationGateway, language: str
) -> BotPromptRenderer:
    """Отрисовщик сообщений бота живет в реестре, пока клиент проходит сценарий."""
    renderer = relays.get(prompt_key(user_id))
    if renderer is None:
        renderer = await relays.attach(prompt_key(user_id), BotPromptRenderer(bot, user_id, gateway, language))
    renderer.set_language(language)
    return renderer


def keyboard_for(state: BotState) -> Optional[InlineKeyboardMarkup]:
    if state == BotState.WELCOME:
        return keyboards.role_keyboard()
    if state == BotState.ASK_LANGUAGE:
        return keyboards.language_keyboard()
    if state == BotState.DEPARTMENT_SELECTION:
        return keyboards.department_keyboard()
    if state in (BotState.ASK_NAME, BotState.ASK_PHONE):
        return keyboards.back_keyboard()
    return None


async def load_flow(state: FSMContext) -> PreChatFlow:
    data = await state.get_data()
    return PreChatFlow.restore(data.get("flow"))


async def save_flow(state: FSMContext, flow: PreChatFlow) -> None:
    await state.update_data(flow=flow.snapshot())


async def advance(
    flow: PreChatFlow,
    event: BotEvent,
    value: Optional[str],
    bot: Bot,
    user_id: int,
    gateway: TranslationGateway,
    relays: RelayRegistry,
) -> None:
    """Применяет событие к сценарию и показывает ответы бота."""
    replies = flow.handle(event, value)
    renderer = await get_renderer(relays, bot, user_id, gateway, flow.display_language)
    for reply in replies:
        await renderer.show(reply, reply_markup=keyboard_for(flow.state))


async def attach_customer_view(
    bot: Bot,
    user_id: int,
    chat_id: str,
    language: str,
    repository: ChatRepository,
    gateway: TranslationGateway,
    relays: RelayRegistry,
) -> ChatRelay:
    view = LiveMessageView(repository, gateway, chat_id, str(user_id), ViewerRole.CUSTOMER, language)
    relay = ChatRelay(bot, user_id, view, on_closed=lambda closed: relays.discard(chat_key(user_id), closed))
    return await relays.attach(chat_key(user_id), relay)


@router.message(CommandStart())
async def handle_start(message: Message, bot: Bot, state: FSMContext, gateway: TranslationGateway, relays: RelayRegistry):
    """
    Начинает сценарий заново: приветствие и выбор роли.
    """
    user_id = message.from_user.id
    await relays.detach(chat_key(user_id))
    await relays.detach(prompt_key(user_id))
    await state.clear()

    flow = PreChatFlow()
    renderer = await get_renderer(relays, bot, user_id, gateway, flow.display_language)
    for reply in flow.start():
        await renderer.show(reply, reply_markup=keyboard_for(flow.state))
    await save_flow(state, flow)


@router.callback_query(F.data == "role:agent")
async def handle_agent_role(callback: CallbackQuery):
    # Агенты перехватываются роутером агентов раньше, сюда попадают все остальные
    logging.warning(f"User {callback.from_user.id} tried to sign in as an agent.")
    await callback.answer("⛔️ You are not registered as a support agent.", show_alert=True)


@router.callback_query(F.data == "role:customer")
async def handle_customer_role(
    callback: CallbackQuery, bot: Bot, state: FSMContext, gateway: TranslationGateway, relays: RelayRegistry
):
    flow = await load_flow(state)
    try:
        await advance(flow, BotEvent.CHOOSE_CUSTOMER, None, bot, callback.from_user.id, gateway, relays)
    except InvalidTransitionError as e:
        logging.info(f"Ignoring role choice from {callback.from_user.id}: {e}")
    await save_flow(state, flow)
    await callback.answer()


@router.callback_query(F.data == "back")
async def handle_back(
    callback: CallbackQuery, bot: Bot, state: FSMContext, gateway: TranslationGateway, relays: RelayRegistry
):
    flow = await load_flow(state)
    try:
        await advance(flow, BotEvent.BACK, None, bot, callback.from_user.id, gateway, relays)
    except InvalidTransitionError as e:
        logging.info(f"Ignoring back from {callback.from_user.id}: {e}")
    await save_flow(state, flow)
    await callback.answer()


@router.callback_query(F.data.startswith("lang:"))
async def handle_language_selected(
    callback: CallbackQuery,
    bot: Bot,
    state: FSMContext,
    repository: ChatRepository,
    gateway: TranslationGateway,
    relays: RelayRegistry,
):
    """
    Выбор языка: шаг сценария или смена языка посреди чата.
    """
    user_id = callback.from_user.id
    language = callback.data.split(":", 1)[1]
    flow = await load_flow(state)

    if flow.state == BotState.CHAT:
        data = await state.get_data()
        try:
            session_service.change_customer_language(repository, data["chat_id"], language)
        except (RepositoryError, ChatClosedError, KeyError) as e:
            logging.error(f"Failed to change language of customer {user_id}: {e}")
            await callback.answer("🔴 Could not change the language. Please try again.", show_alert=True)
            return
        flow.language = language
        relay = relays.get(chat_key(user_id))
        if relay:
            relay.view.set_language(language)
        await save_flow(state, flow)
        await callback.answer(f"🌐 {get_language_name(language)}")
        return

    try:
        await advance(flow, BotEvent.LANGUAGE_SELECTED, language, bot, user_id, gateway, relays)
    except InvalidTransitionError as e:
        logging.info(f"Ignoring language choice from {user_id}: {e}")
    await save_flow(state, flow)
    await callback.answer()


@router.callback_query(F.data.startswith("dept:"))
async def handle_department_selected(
    callback: CallbackQuery,
    bot: Bot,
    state: FSMContext,
    repository: ChatRepository,
    gateway: TranslationGateway,
    relays: RelayRegistry,
):
    """
    Выбор отдела: находит или создает сессию и подключает клиента к чату.
    """
    user_id = callback.from_user.id
    department = callback.data.split(":", 1)[1]
    flow = await load_flow(state)
    before = flow.snapshot()

    try:
        replies = flow.handle(BotEvent.DEPARTMENT_SELECTED, department)
    except InvalidTransitionError as e:
        logging.info(f"Ignoring department choice from {user_id}: {e}")
        await callback.answer()
        return

    renderer = await get_renderer(relays, bot, user_id, gateway, flow.display_language)
    if not flow.is_complete:
        for reply in replies:
            await renderer.show(reply, reply_markup=keyboard_for(flow.state))
        await save_flow(state, flow)
        await callback.answer()
        return

    try:
        chat = session_service.resolve_customer_session(
            repository,
            customer_id=str(user_id),
            department=flow.department,
            language=flow.language,
            customer_name=flow.name,
            customer_phone=flow.phone,
        )
    except ConfigurationError as e:
        logging.error(f"Configuration error for department {department}: {e}")
        await save_flow(state, PreChatFlow.restore(before))
        await callback.answer(
            "⛔️ The agent for this department is not configured. Please contact support.", show_alert=True
        )
        return
    except RepositoryError as e:
        logging.error(f"Failed to open chat for customer {user_id}: {e}")
        await save_flow(state, PreChatFlow.restore(before))
        await callback.answer("🔴 Failed to connect to chat services. Please try again later.", show_alert=True)
        return

    await state.update_data(chat_id=chat.id)
    await save_flow(state, flow)
    for reply in replies:
        await renderer.show(reply)
    # Сценарий пройден, дальше переписку ведет ChatRelay
    await relays.detach(prompt_key(user_id))
    await attach_customer_view(bot, user_id, chat.id, flow.display_language, repository, gateway, relays)
    await callback.answer()


@router.message(Command("language"))
async def handle_language_command(message: Message, state: FSMContext):
    flow = await load_flow(state)
    if flow.state != BotState.CHAT:
        await message.answer("Please finish the introduction first, or send /start.")
        return
    await message.answer("Which language would you like to chat in?", reply_markup=keyboards.language_keyboard(with_back=False))


@router.message(F.text)
async def handle_user_message(
    message: Message,
    bot: Bot,
    state: FSMContext,
    repository: ChatRepository,
    gateway: TranslationGateway,
    relays: RelayRegistry,
):
    """
    Обрабатывает текст клиента: ответы на вопросы бота или сообщения в чат.
    """
    user_id = message.from_user.id
    flow = await load_flow(state)

    if flow.state != BotState.CHAT:
        try:
            await advance(flow, BotEvent.TEXT, message.text, bot, user_id, gateway, relays)
        except InvalidTransitionError:
            await message.answer("Please use the buttons above, or send /start to begin again.")
            return
        await save_flow(state, flow)
        return

    data = await state.get_data()
    chat_id = data.get("chat_id")
    closed_notice = "🔒 This chat has been closed by the agent. Send /start to begin a new one."
    relay = relays.get(chat_key(user_id))
    if relay is None and chat_id:
        # Relay нет после закрытия чата или после перезапуска бота
        try:
            chat = repository.get_session(chat_id)
        except RepositoryError as e:
            logging.error(f"Failed to load chat {chat_id} for customer {user_id}: {e}")
            await message.answer("🔴 Your message was not sent. Please try again.")
            return
        if chat is not None and chat.status == ChatStatus.CLOSED:
            await message.answer(closed_notice)
            return
        relay = await attach_customer_view(
            bot, user_id, chat_id, flow.display_language, repository, gateway, relays
        )
    if relay is None:
        await message.answer("Please send /start to begin a new chat.")
        return

    try:
        await relay.view.send(message.text)
    except ChatClosedError:
        await message.answer(closed_notice)
    except RepositoryError as e:
        logging.error(f"Failed to send message from customer {user_id}: {e}")
        await message.answer("🔴 Your message was not sent. Please try again.")
