import datetime
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from aiogram.filters import CommandObject
from aiogram.types import CallbackQuery, Chat, Message, User

from livechat.core.exceptions import RepositoryError
from livechat.handlers.agent_handlers import (
    IsAgent,
    handle_agent_message,
    handle_chats_command,
    handle_close_chat_command,
    handle_language_command,
    handle_open_chat,
    handle_stats_command,
)
from livechat.handlers.relay import RelayRegistry
from livechat.models.models import ChatStatus, Department, SenderType
from livechat.services import session_service
from livechat.services.chat_repository import ChatRepository

AGENT = User(id=1001, is_bot=False, first_name="Doctor")
OTHER_AGENT = User(id=1002, is_bot=False, first_name="Cashier")


def make_message(text: str, user: User = AGENT) -> Message:
    return Message(
        message_id=1,
        chat=Chat(id=user.id, type="private"),
        from_user=user,
        text=text,
        date=datetime.datetime.now(),
    )


def make_callback(data: str, user: User = AGENT) -> CallbackQuery:
    return CallbackQuery(id="1", from_user=user, chat_instance="ci", data=data, message=make_message("menu", user))


@pytest.fixture(name="bot")
def bot_fixture(mocker):
    bot = AsyncMock()
    bot.send_message.return_value = mocker.Mock(message_id=20)
    return bot


@pytest_asyncio.fixture(name="relays")
async def relays_fixture():
    relays = RelayRegistry()
    yield relays
    await relays.close_all()


@pytest.fixture(name="chat")
def chat_fixture(repository: ChatRepository):
    return repository.create_session("555", "1001", Department.DOCTOR, "es", customer_name="Ana")


async def open_chat(chat, bot, repository, gateway, relays, user: User = AGENT):
    await handle_open_chat(
        make_callback(f"open:{chat.id}", user), bot=bot, repository=repository, gateway=gateway, relays=relays
    )


@pytest.mark.asyncio
async def test_is_agent_filter():
    is_agent = IsAgent()

    assert await is_agent(make_message("hi", AGENT)) is True
    assert await is_agent(make_message("hi", User(id=7, is_bot=False, first_name="Guest"))) is False


@pytest.mark.asyncio
async def test_chats_command_shows_department_inbox(bot, repository: ChatRepository, relays, chat):
    await handle_chats_command(make_message("/chats"), bot=bot, repository=repository, relays=relays)
    relay = relays.get(("inbox", AGENT.id))
    await relay.wait_idle()

    keyboard = bot.send_message.await_args.kwargs["reply_markup"]
    assert keyboard.inline_keyboard[0][0].callback_data == f"open:{chat.id}"


@pytest.mark.asyncio
async def test_open_chat_success(bot, repository: ChatRepository, gateway, relays, chat, mocker):
    """
    Тест: агент открывает назначенный на него чат.
    """
    # Arrange
    mocker.patch("aiogram.types.CallbackQuery.answer", new_callable=AsyncMock)
    answer_mock = mocker.patch("aiogram.types.Message.answer", new_callable=AsyncMock)

    # Act
    await open_chat(chat, bot, repository, gateway, relays)

    # Assert
    relay = relays.get(("chat", AGENT.id))
    assert relay is not None
    assert relay.chat_id == chat.id
    assert relay.view.language == "en"
    assert "Ana" in answer_mock.await_args.args[0]


@pytest.mark.asyncio
async def test_open_chat_wrong_agent(bot, repository: ChatRepository, gateway, relays, chat, mocker):
    """
    Тест: агент пытается открыть чат, назначенный на другого агента.
    """
    callback_answer = mocker.patch("aiogram.types.CallbackQuery.answer", new_callable=AsyncMock)

    await open_chat(chat, bot, repository, gateway, relays, user=OTHER_AGENT)

    callback_answer.assert_awaited_once_with("⛔️ This chat is assigned to another agent.", show_alert=True)
    assert relays.get(("chat", OTHER_AGENT.id)) is None


@pytest.mark.asyncio
async def test_agent_message_is_translated_for_customer(bot, repository: ChatRepository, gateway, relays, chat, mocker):
    """
    Тест: сообщение агента сохраняется вместе с переводом на язык клиента.
    """
    # Arrange
    mocker.patch("aiogram.types.CallbackQuery.answer", new_callable=AsyncMock)
    mocker.patch("aiogram.types.Message.answer", new_callable=AsyncMock)
    await open_chat(chat, bot, repository, gateway, relays)

    # Act
    await handle_agent_message(make_message("Hello"), relays=relays)

    # Assert
    messages = repository.list_messages(chat.id)
    assert len(messages) == 1
    assert messages[0].sender_type == SenderType.AGENT
    assert messages[0].translated_text == "Hola"
    assert messages[0].translated_language == "es"


@pytest.mark.asyncio
async def test_agent_message_without_open_chat(relays, mocker):
    reply_mock = mocker.patch("aiogram.types.Message.reply", new_callable=AsyncMock)

    await handle_agent_message(make_message("Hello"), relays=relays)

    reply_mock.assert_awaited_once_with("⚠️ No chat is open. Use /chats to pick one.")


@pytest.mark.asyncio
async def test_close_chat_success(bot, repository: ChatRepository, gateway, relays, chat, mocker):
    """
    Тест: агент закрывает свой чат, relay отключается.
    """
    # Arrange
    mocker.patch("aiogram.types.CallbackQuery.answer", new_callable=AsyncMock)
    mocker.patch("aiogram.types.Message.answer", new_callable=AsyncMock)
    reply_mock = mocker.patch("aiogram.types.Message.reply", new_callable=AsyncMock)
    await open_chat(chat, bot, repository, gateway, relays)

    # Act
    await handle_close_chat_command(make_message("/close_chat"), repository=repository, relays=relays)

    # Assert
    assert repository.get_session(chat.id).status == ChatStatus.CLOSED
    assert relays.get(("chat", AGENT.id)) is None
    reply_mock.assert_awaited_once_with("✅ Chat closed. Use /chats to pick another one.")


@pytest.mark.asyncio
async def test_close_chat_storage_error(bot, repository: ChatRepository, gateway, relays, chat, mocker):
    mocker.patch("aiogram.types.CallbackQuery.answer", new_callable=AsyncMock)
    mocker.patch("aiogram.types.Message.answer", new_callable=AsyncMock)
    reply_mock = mocker.patch("aiogram.types.Message.reply", new_callable=AsyncMock)
    await open_chat(chat, bot, repository, gateway, relays)
    mocker.patch.object(session_service, "close_session", return_value=False)

    await handle_close_chat_command(make_message("/close_chat"), repository=repository, relays=relays)

    reply_mock.assert_awaited_once_with("🔴 An error occurred while closing the chat. Please try again.")
    assert relays.get(("chat", AGENT.id)) is not None



@pytest.mark.asyncio
async def test_close_chat_when_chat_cannot_be_loaded(bot, repository: ChatRepository, gateway, relays, chat, mocker):
    """
    Негативный случай: хранилище недоступно, агент получает ответ, чат не закрывается.
    """
    # Arrange
    mocker.patch("aiogram.types.CallbackQuery.answer", new_callable=AsyncMock)
    mocker.patch("aiogram.types.Message.answer", new_callable=AsyncMock)
    reply_mock = mocker.patch("aiogram.types.Message.reply", new_callable=AsyncMock)
    await open_chat(chat, bot, repository, gateway, relays)
    mocker.patch.object(repository, "get_session", side_effect=RepositoryError("offline"))
    close_spy = mocker.spy(session_service, "close_session")

    # Act
    await handle_close_chat_command(make_message("/close_chat"), repository=repository, relays=relays)

    # Assert
    reply_mock.assert_awaited_once_with("🔴 Could not load the chat. Please try again.")
    close_spy.assert_not_called()
    assert relays.get(("chat", AGENT.id)) is not None


@pytest.mark.asyncio
async def test_agent_message_to_closed_chat(bot, repository: ChatRepository, gateway, relays, chat, mocker):
    """
    Тест: чат закрыт, сообщение агента не сохраняется.
    """
    mocker.patch("aiogram.types.CallbackQuery.answer", new_callable=AsyncMock)
    mocker.patch("aiogram.types.Message.answer", new_callable=AsyncMock)
    reply_mock = mocker.patch("aiogram.types.Message.reply", new_callable=AsyncMock)
    await open_chat(chat, bot, repository, gateway, relays)
    repository.update_session_status(chat.id, ChatStatus.CLOSED)

    await handle_agent_message(make_message("Are you there?"), relays=relays)

    reply_mock.assert_awaited_once_with("🔒 This chat has been closed and no new messages can be sent.")
    assert repository.list_messages(chat.id) == []


@pytest.mark.asyncio
async def test_language_command_updates_open_view(bot, repository: ChatRepository, gateway, relays, chat, mocker):
    mocker.patch("aiogram.types.CallbackQuery.answer", new_callable=AsyncMock)
    mocker.patch("aiogram.types.Message.answer", new_callable=AsyncMock)
    reply_mock = mocker.patch("aiogram.types.Message.reply", new_callable=AsyncMock)
    await open_chat(chat, bot, repository, gateway, relays)

    await handle_language_command(
        make_message("/lang fr"),
        command=CommandObject(prefix="/", command="lang", args="fr"),
        repository=repository,
        relays=relays,
    )

    assert relays.get(("chat", AGENT.id)).view.language == "fr"
    assert repository.get_agent_profile("1001").preferred_language == "fr"
    assert "French" in reply_mock.await_args.args[0]


@pytest.mark.asyncio
async def test_language_command_rejects_unknown_code(repository: ChatRepository, relays, mocker):
    reply_mock = mocker.patch("aiogram.types.Message.reply", new_callable=AsyncMock)

    await handle_language_command(
        make_message("/lang xx"),
        command=CommandObject(prefix="/", command="lang", args="xx"),
        repository=repository,
        relays=relays,
    )

    assert reply_mock.await_args.args[0].startswith("Usage: /lang")
    assert repository.get_agent_profile("1001") is None


@pytest.mark.asyncio
async def test_stats_command(repository: ChatRepository, chat, mocker):
    reply_mock = mocker.patch("aiogram.types.Message.reply", new_callable=AsyncMock)
    repository.create_session("777", "1002", Department.PAYMENTS, "en")

    await handle_stats_command(make_message("/stats"), repository=repository)

    text = reply_mock.await_args.args[0]
    assert "doctor: open - 1" in text
    assert "payments: open - 1" in text
