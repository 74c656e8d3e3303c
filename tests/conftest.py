import os

# Настройки читаются при импорте livechat.core.config, поэтому задаем их до импорта приложения
os.environ.setdefault("BOT_TOKEN", "123456:TEST-TOKEN")
os.environ.setdefault("DEPARTMENT_AGENTS", "doctor:1001,payments:1002")
os.environ.setdefault("DEFAULT_LANGUAGE", "en")

import pytest  # noqa: E402

from livechat.core.exceptions import TranslationServiceError  # noqa: E402
from livechat.db.session import BackendContext  # noqa: E402
from livechat.services import agent_service  # noqa: E402
from livechat.services.chat_repository import ChatRepository  # noqa: E402
from livechat.services.translation_service import TranslationGateway, TranslationResult  # noqa: E402


class FakeGateway(TranslationGateway):
    """
    Шлюз перевода без сети. Записывает каждый вызов внешнего сервиса.
    """

    def __init__(self, translations=None, fail=False):
        super().__init__(api_key="test-key", endpoint="http://translate.test")
        self.translations = translations or {}
        self.fail = fail
        self.calls = []
        # asyncio.Event: если задан, перевод ждет его перед ответом
        self.gate = None

    async def _translate_remote(self, text, target_language, source_language):
        self.calls.append((text, target_language, source_language))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise TranslationServiceError("Translation API error: 503")
        # Без заготовленного перевода текст возвращается как есть
        translated = self.translations.get((text, target_language), text)
        return TranslationResult(translated_text=translated, detected_language="en")


@pytest.fixture(name="backend")
def backend_fixture():
    """
    Создает и предоставляет контекст хранилища на временной in-memory SQLite БД.
    Эта фикстура доступна для всех тестов благодаря conftest.py.
    """
    backend = BackendContext("sqlite:///:memory:")
    backend.init()
    yield backend
    backend.close()


@pytest.fixture(name="repository")
def repository_fixture(backend: BackendContext):
    return ChatRepository(backend)


@pytest.fixture(name="gateway")
def gateway_fixture():
    return FakeGateway(
        {
            ("Hello", "es"): "Hola",
            ("Hola", "en"): "Hello",
            ("Hola", "fr"): "Bonjour",
            ("Hello", "fr"): "Bonjour",
            ("Necesito una cita", "en"): "I need an appointment",
        }
    )


@pytest.fixture(autouse=True)
def clear_agent_language_cache():
    agent_service._local_languages.clear()
    yield
    agent_service._local_languages.clear()


@pytest.fixture(name="failing_gateway")
def failing_gateway_fixture():
    return FakeGateway(fail=True)
