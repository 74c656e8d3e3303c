from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject

from livechat.handlers.relay import RelayRegistry
from livechat.services.chat_repository import ChatRepository
from livechat.services.translation_service import TranslationGateway


class BackendMiddleware(BaseMiddleware):
    """
    Middleware для внедрения репозитория, шлюза перевода и реестра relay в хэндлеры.
    """

    def __init__(self, repository: ChatRepository, gateway: TranslationGateway, relays: RelayRegistry):
        self.repository = repository
        self.gateway = gateway
        self.relays = relays

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        """
        Выполняется для каждого входящего события.

        Кладет зависимости в `data`, откуда aiogram передает их в хэндлеры по имени аргумента.
        """
        data["repository"] = self.repository
        data["gateway"] = self.gateway
        data["relays"] = self.relays
        return await handler(event, data)
