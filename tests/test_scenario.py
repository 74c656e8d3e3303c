import pytest

from livechat.core.exceptions import ChatClosedError
from livechat.models.models import Department, SenderType
from livechat.services import session_service
from livechat.services.chat_repository import ChatRepository
from livechat.views.message_view import LiveMessageView, TextSource, ViewerRole


@pytest.mark.asyncio
async def test_doctor_chat_end_to_end(repository: ChatRepository, gateway, mocker):
    """
    Клиент на испанском пишет в отдел doctor, агент отвечает на английском,
    затем закрывает чат.
    """
    # Клиент попадает в чат отдела
    chat = session_service.resolve_customer_session(repository, "c1", Department.DOCTOR, "es")
    assert chat.agent_id == "1001"
    assert session_service.resolve_customer_session(repository, "c1", Department.DOCTOR, "es").id == chat.id

    customer = LiveMessageView(repository, gateway, chat.id, "c1", ViewerRole.CUSTOMER, "es").open()
    agent = LiveMessageView(repository, gateway, chat.id, chat.agent_id, ViewerRole.AGENT, "en").open()

    # Клиент пишет, агент видит перевод
    await customer.send("Necesito una cita")
    await agent.cache.settle()
    assert agent.rendered[0].text == "I need an appointment"
    assert agent.rendered[0].source == TextSource.CACHE
    # Свое сообщение клиент не переводит
    assert gateway.calls == [("Necesito una cita", "en", "auto")]

    # Агент отвечает, перевод сохраняется с сообщением
    await agent.send("Hello")
    stored = repository.list_messages(chat.id)[-1]
    assert (stored.sender_type, stored.translated_text, stored.translated_language) == (SenderType.AGENT, "Hola", "es")
    assert customer.rendered[-1].text == "Hola"
    assert customer.rendered[-1].source == TextSource.PERSISTED

    # Клиент меняет язык, сохраненный перевод на испанский больше не подходит
    session_service.change_customer_language(repository, chat.id, "fr")
    customer.set_language("fr")
    await customer.cache.settle()
    assert customer.rendered[-1].text == "Bonjour"

    # Агент закрывает чат, писать в него больше нельзя
    assert session_service.close_session(repository, chat.id) is True
    assert customer.is_closed and agent.is_closed
    append_spy = mocker.spy(repository, "append_message")
    with pytest.raises(ChatClosedError):
        await customer.send("¿Hola?")
    with pytest.raises(ChatClosedError):
        await agent.send("Anything else?")
    append_spy.assert_not_called()

    # Новое обращение после закрытия открывает новую сессию
    next_chat = session_service.resolve_customer_session(repository, "c1", Department.DOCTOR, "fr")
    assert next_chat.id != chat.id

    customer.close()
    agent.close()
