"""
Модуль для управления подключением к хранилищу.

BackendContext объединяет движок БД и шину изменений, через которую
работают живые подписки. Контекст создается явно и явно закрывается,
глобальных синглтонов нет.
"""
import logging
from typing import Any, Callable, List, Optional

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from livechat.core.exceptions import RepositoryError
from livechat.models import models  # noqa: F401  регистрирует таблицы в metadata


class Subscription:
    """
    Живая подписка на набор документов.

    При каждом изменении подходящего документа заново загружает результат
    и отдает его целиком в on_change. Ошибка загрузки уходит в on_error,
    после чего подписка считается мертвой.
    """

    def __init__(
        self,
        hub: "ChangeHub",
        predicate: Callable[[Any], bool],
        loader: Callable[[], list],
        on_change: Callable[[list], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        self._hub = hub
        self._predicate = predicate
        self._loader = loader
        self._on_change = on_change
        self._on_error = on_error
        self.active = True

    def matches(self, document: Any) -> bool:
        return self.active and self._predicate(document)

    def refresh(self) -> None:
        if not self.active:
            return
        try:
            rows = self._loader()
        except RepositoryError as e:
            logging.error(f"Subscription load failed, subscription is dead: {e}")
            self.unsubscribe()
            if self._on_error:
                self._on_error(e)
            return
        try:
            self._on_change(rows)
        except Exception:
            logging.exception("Subscription listener raised an exception.")

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._hub.remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.unsubscribe()


class ChangeHub:
    """Шина изменений: раздает записи хранилища подходящим подпискам."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []

    def add(self, subscription: Subscription) -> None:
        self._subscriptions.append(subscription)

    def remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, document: Any) -> None:
        # Копия списка: слушатель может отписаться прямо во время рассылки
        for subscription in list(self._subscriptions):
            if subscription.matches(document):
                subscription.refresh()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.unsubscribe()


class BackendContext:
    """
    Контекст хранилища: движок БД + шина изменений.

    Жизненный цикл: init() при старте приложения, close() при остановке.
    """

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine = None
        self.hub = ChangeHub()

    def init(self) -> "BackendContext":
        """Создает движок и все таблицы."""
        if self.engine is not None:
            return self
        kwargs = {"echo": self.echo}
        if self.database_url.startswith("sqlite"):
            # connect_args={"check_same_thread": False} - обязательный флаг для SQLite
            # при работе с асинхронными фреймворками, такими как aiogram.
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in self.database_url:
                # Все сессии должны видеть одну и ту же in-memory БД
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(self.database_url, **kwargs)
        SQLModel.metadata.create_all(self.engine)
        logging.info(f"Backend initialized for {self.database_url}")
        return self

    def session(self) -> Session:
        """
        Новая сессия БД для одной операции.

        Используется как контекстный менеджер, что гарантирует ее закрытие.
        """
        if self.engine is None:
            raise RepositoryError("Backend is not initialized.")
        return Session(self.engine, expire_on_commit=False)

    def close(self) -> None:
        self.hub.close()
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            logging.info("Backend closed.")

    def __enter__(self) -> "BackendContext":
        return self.init()

    def __exit__(self, *exc_info) -> None:
        self.close()
