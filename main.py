import asyncio
import logging
import sys

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.types.error_event import ErrorEvent

from livechat.core.config import settings
from livechat.db.session import BackendContext
from livechat.handlers import agent_handlers, user_handlers
from livechat.handlers.relay import RelayRegistry
from livechat.middlewares.backend_middleware import BackendMiddleware
from livechat.services.agent_service import sync_agents_from_settings
from livechat.services.chat_repository import ChatRepository
from livechat.services.translation_service import build_gateway


async def error_handler(event: ErrorEvent, bot: Bot):
    """
    Глобальный обработчик ошибок.
    Ловит все исключения, которые не были обработаны в хэндлерах.
    """
    logging.error(f"Unhandled exception: {event.exception}", exc_info=True)

    # Отправляем сообщение пользователю, если это возможно
    user = None
    if event.update.message:
        user = event.update.message.from_user
    elif event.update.callback_query:
        user = event.update.callback_query.from_user
    if user:
        try:
            await bot.send_message(
                user.id,
                "Something went wrong on our side. We are already working on it. "
                "Please try again later.",
            )
        except Exception as e:
            logging.error(f"Failed to send error message to user {user.id}: {e}")


async def main() -> None:
    """Главная функция для запуска бота."""
    backend = BackendContext(settings.DATABASE_URL, echo=settings.DB_ECHO)
    repository = ChatRepository(backend)
    gateway = build_gateway(settings)
    relays = RelayRegistry()

    bot = Bot(
        token=settings.BOT_TOKEN.get_secret_value(),
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    dp = Dispatcher()

    dp.update.middleware(BackendMiddleware(repository, gateway, relays))

    def on_startup():
        """Выполняется при старте бота."""
        logging.info("Initializing database and tables...")
        backend.init()
        logging.info("Database initialized successfully.")
        # Синхронизация агентов при старте
        sync_agents_from_settings(repository)

    async def on_shutdown():
        """Освобождает подписки и хранилище при остановке."""
        await relays.close_all()
        backend.close()

    dp.startup.register(on_startup)
    dp.shutdown.register(on_shutdown)
    dp.errors.register(error_handler)

    # Роутер агентов первым: его фильтр пропускает только агентов
    dp.include_router(agent_handlers.router)
    dp.include_router(user_handlers.router)

    logging.info("Starting bot...")
    await bot.delete_webhook(drop_pending_updates=True)
    await dp.start_polling(bot)


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        stream=sys.stdout,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Bot stopped.")
        raise
