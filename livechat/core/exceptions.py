"""
Иерархия ошибок чата.

Хэндлеры ловят эти ошибки на границе ввода-вывода и превращают их
в сообщение пользователю.
"""


class LiveChatError(Exception):
    pass


class ConfigurationError(LiveChatError):
    """Для отдела не настроен агент. Сессия не создается."""


class RepositoryError(LiveChatError):
    """Хранилище недоступно или отклонило операцию."""


class ChatClosedError(LiveChatError):
    """Попытка отправить сообщение в закрытый чат."""


class AuthenticationError(LiveChatError):
    """Пользователь не опознан как агент поддержки."""


class InvalidTransitionError(LiveChatError):
    """Событие недопустимо в текущем состоянии сценария бота."""


class TranslationServiceError(LiveChatError):
    """Сервис перевода вернул ошибку или некорректный ответ."""
