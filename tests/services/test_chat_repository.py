import datetime

import pytest

from livechat.core.exceptions import ChatClosedError, RepositoryError
from livechat.db.session import BackendContext
from livechat.models.models import AgentProfile, ChatSession, ChatStatus, Department, SenderType
from livechat.services.chat_repository import ChatRepository


def open_chat(repository: ChatRepository, customer_id: str = "555", language: str = "es"):
    return repository.create_session(customer_id, "1001", Department.DOCTOR, language)


# --- Тесты для сессий ---


def test_create_session_sets_defaults(repository: ChatRepository):
    """
    Позитивный случай: новая сессия открыта и хранит все поля анкеты.
    """
    # Act
    chat = repository.create_session(
        "555", "1001", Department.DOCTOR, "es", customer_name="Ana", customer_phone="+34 600 000 000"
    )

    # Assert
    stored = repository.get_session(chat.id)
    assert stored is not None
    assert stored.status == ChatStatus.OPEN
    assert stored.customer_language == "es"
    assert stored.customer_name == "Ana"
    assert stored.closed_at is None
    assert stored.created_at == stored.last_message_at


def test_find_open_session_filters_by_language(repository: ChatRepository):
    chat = open_chat(repository, language="es")

    assert repository.find_open_session("555", Department.DOCTOR, "es").id == chat.id
    assert repository.find_open_session("555", Department.DOCTOR, "fr") is None
    assert repository.find_open_session("555", Department.PAYMENTS) is None


def test_find_open_session_returns_newest(repository: ChatRepository):
    """
    Граничный случай: две открытые сессии (гонка создания), берется самая новая.
    """
    open_chat(repository)
    newest = open_chat(repository)

    assert repository.find_open_session("555", Department.DOCTOR, "es").id == newest.id


def test_list_open_sessions_excludes_closed_and_other_departments(repository: ChatRepository):
    first = open_chat(repository, customer_id="1")
    second = open_chat(repository, customer_id="2")
    repository.create_session("3", "1002", Department.PAYMENTS, "en")
    repository.update_session_status(first.id, ChatStatus.CLOSED)

    open_ids = [chat.id for chat in repository.list_open_sessions(Department.DOCTOR)]

    assert open_ids == [second.id]


def test_close_session_is_terminal(repository: ChatRepository):
    """
    Негативный случай: закрытую сессию нельзя открыть снова.
    """
    chat = open_chat(repository)
    closed = repository.update_session_status(chat.id, ChatStatus.CLOSED)
    assert closed.closed_at is not None

    # Повторное закрытие ничего не меняет
    assert repository.update_session_status(chat.id, ChatStatus.CLOSED).status == ChatStatus.CLOSED
    with pytest.raises(ChatClosedError):
        repository.update_session_status(chat.id, ChatStatus.OPEN)


def test_update_status_of_missing_chat_raises(repository: ChatRepository):
    with pytest.raises(RepositoryError):
        repository.update_session_status("missing", ChatStatus.CLOSED)


def test_update_session_language(repository: ChatRepository):
    chat = open_chat(repository)

    repository.update_session_language(chat.id, "fr")

    assert repository.get_session(chat.id).customer_language == "fr"


def test_count_sessions_groups_by_department_and_status(repository: ChatRepository):
    first = open_chat(repository, customer_id="1")
    open_chat(repository, customer_id="2")
    repository.create_session("3", "1002", Department.PAYMENTS, "en")
    repository.update_session_status(first.id, ChatStatus.CLOSED)

    counts = repository.count_sessions()

    assert counts[(Department.DOCTOR, ChatStatus.OPEN)] == 1
    assert counts[(Department.DOCTOR, ChatStatus.CLOSED)] == 1
    assert counts[(Department.PAYMENTS, ChatStatus.OPEN)] == 1


# --- Тесты для сообщений ---


def test_messages_are_listed_in_send_order(repository: ChatRepository):
    """
    Позитивный случай: порядок (timestamp, id) совпадает с порядком отправки.
    """
    chat = open_chat(repository)
    for index in range(5):
        repository.append_message(chat.id, "555", SenderType.CUSTOMER, f"message {index}")

    messages = repository.list_messages(chat.id)

    assert [m.original_text for m in messages] == [f"message {i}" for i in range(5)]
    assert all(a.timestamp <= b.timestamp for a, b in zip(messages, messages[1:]))


def test_append_message_updates_last_message_at(repository: ChatRepository):
    chat = open_chat(repository)

    message = repository.append_message(chat.id, "1001", SenderType.AGENT, "Hello", "Hola", "es")

    stored = repository.get_session(chat.id)
    assert stored.last_message_at == message.timestamp
    assert message.translated_text == "Hola"
    assert message.translated_language == "es"


def test_timestamps_are_stored_in_utc(repository: ChatRepository):
    """
    Все отметки времени читаются из хранилища с tzinfo UTC.
    """
    # Arrange
    chat = open_chat(repository)

    # Act
    message = repository.append_message(chat.id, "555", SenderType.CUSTOMER, "Hola")
    closed = repository.update_session_status(chat.id, ChatStatus.CLOSED)

    # Assert
    stored = repository.get_session(chat.id)
    for value in (stored.created_at, stored.last_message_at, stored.closed_at, message.timestamp):
        assert value.utcoffset() == datetime.timedelta(0)
    assert closed.closed_at >= stored.created_at
    assert repository.list_messages(chat.id)[0].timestamp.tzinfo is not None


def test_local_time_is_converted_to_utc(repository: ChatRepository):
    chat = repository.create_session("555", "1001", Department.DOCTOR, "es")
    local = datetime.datetime(2030, 1, 1, 15, 0, tzinfo=datetime.timezone(datetime.timedelta(hours=3)))

    with repository._session() as session:
        stored = session.get(ChatSession, chat.id)
        stored.last_message_at = local
        session.add(stored)
        session.commit()

    message = repository.append_message(chat.id, "555", SenderType.CUSTOMER, "Hola")
    assert message.timestamp == local
    assert message.timestamp.utcoffset() == datetime.timedelta(0)
    assert message.timestamp.hour == 12


def test_append_message_rejects_bot_sender(repository: ChatRepository):
    chat = open_chat(repository)

    with pytest.raises(ValueError):
        repository.append_message(chat.id, "bot", SenderType.BOT, "Welcome!")

    assert repository.list_messages(chat.id) == []


def test_append_message_to_missing_chat_raises(repository: ChatRepository):
    with pytest.raises(RepositoryError):
        repository.append_message("missing", "555", SenderType.CUSTOMER, "Hola")


def test_uninitialized_backend_raises_repository_error():
    """
    Негативный случай: хранилище недоступно, ошибка типизирована.
    """
    repository = ChatRepository(BackendContext("sqlite:///:memory:"))

    with pytest.raises(RepositoryError):
        repository.get_session("any")


# --- Тесты для профилей агентов ---


def test_save_agent_profile_merges(repository: ChatRepository):
    repository.save_agent_profile(AgentProfile(agent_id="1001", department=Department.DOCTOR))
    repository.save_agent_profile(
        AgentProfile(agent_id="1001", department=Department.DOCTOR, preferred_language="de")
    )

    profiles = repository.list_agent_profiles()

    assert len(profiles) == 1
    assert repository.get_agent_profile("1001").preferred_language == "de"


# --- Тесты для подписок ---


def test_subscribe_messages_fires_initially_and_on_append(repository: ChatRepository):
    """
    Позитивный случай: подписка получает весь журнал сразу и после каждой записи.
    """
    # Arrange
    chat = open_chat(repository)
    other = open_chat(repository, customer_id="777")
    snapshots = []

    # Act
    subscription = repository.subscribe_messages(chat.id, snapshots.append)
    repository.append_message(chat.id, "555", SenderType.CUSTOMER, "Hola")
    repository.append_message(other.id, "777", SenderType.CUSTOMER, "Hi")
    repository.append_message(chat.id, "1001", SenderType.AGENT, "Hello")

    # Assert
    assert [len(snapshot) for snapshot in snapshots] == [0, 1, 2]
    assert [m.original_text for m in snapshots[-1]] == ["Hola", "Hello"]
    subscription.unsubscribe()


def test_unsubscribed_listener_is_not_called(repository: ChatRepository):
    chat = open_chat(repository)
    snapshots = []

    with repository.subscribe_messages(chat.id, snapshots.append):
        repository.append_message(chat.id, "555", SenderType.CUSTOMER, "first")
    repository.append_message(chat.id, "555", SenderType.CUSTOMER, "second")

    assert len(snapshots) == 2


def test_subscribe_open_sessions_sees_new_and_closed_chats(repository: ChatRepository):
    snapshots = []
    subscription = repository.subscribe_open_sessions(Department.DOCTOR, snapshots.append)

    chat = open_chat(repository)
    repository.create_session("9", "1002", Department.PAYMENTS, "en")
    repository.update_session_status(chat.id, ChatStatus.CLOSED)

    assert [[c.id for c in snapshot] for snapshot in snapshots] == [[], [chat.id], []]
    subscription.unsubscribe()


def test_subscribe_session_reports_status_change(repository: ChatRepository):
    chat = open_chat(repository)
    statuses = []
    subscription = repository.subscribe_session(chat.id, lambda rows: statuses.append(rows[0].status))

    repository.update_session_status(chat.id, ChatStatus.CLOSED)

    assert statuses == [ChatStatus.OPEN, ChatStatus.CLOSED]
    subscription.unsubscribe()


def test_subscription_dies_after_load_error(repository: ChatRepository, mocker):
    """
    Негативный случай: ошибка загрузки уходит в on_error, подписка больше не срабатывает.
    """
    # Arrange
    chat = open_chat(repository)
    on_change = mocker.Mock()
    on_error = mocker.Mock()
    subscription = repository.subscribe_messages(chat.id, on_change, on_error)
    mocker.patch.object(repository, "list_messages", side_effect=RepositoryError("offline"))

    # Act
    repository.append_message(chat.id, "555", SenderType.CUSTOMER, "Hola")
    repository.append_message(chat.id, "555", SenderType.CUSTOMER, "Hola again")

    # Assert
    on_change.assert_called_once()
    on_error.assert_called_once()
    assert subscription.active is False
