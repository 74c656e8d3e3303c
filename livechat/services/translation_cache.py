"""
Кэш переводов одного зрителя чата.

Хранит message_id -> перевод только для текущего языка зрителя.
Переводы запрашиваются в фоне, готовые результаты попадают в очередь
завершений вместе с поколением, под которым их запросили. Шаг отрисовки
разбирает очередь через drain(): результаты старого поколения
(зритель успел сменить язык) просто отбрасываются, запросы не отменяются.
"""
import asyncio
import logging
from typing import Callable, Dict, List, NamedTuple, Optional, Set

from livechat.core.languages import normalize_language
from livechat.services.translation_service import AUTO, TranslationGateway, TranslationResult


class Completion(NamedTuple):
    generation: int
    key: str
    result: TranslationResult


class TranslationCache:
    def __init__(
        self,
        gateway: TranslationGateway,
        language: str,
        on_ready: Optional[Callable[[], None]] = None,
    ):
        self._gateway = gateway
        self._language = normalize_language(language)
        self._on_ready = on_ready
        self._generation = 0
        self._entries: Dict[str, str] = {}
        self._pending: Set[str] = set()
        self._failed: Set[str] = set()
        self._completions: "asyncio.Queue[Completion]" = asyncio.Queue()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def language(self) -> str:
        return self._language

    @property
    def generation(self) -> int:
        return self._generation

    def get(self, key: str) -> Optional[str]:
        return self._entries.get(key)

    def is_pending(self, key: str) -> bool:
        return key in self._pending

    def request(self, key: str, text: str, source_language: str = AUTO) -> bool:
        """
        Запускает фоновый перевод, если для ключа нет ни результата, ни запроса в полете.

        :return: True, если запрос действительно отправлен.
        """
        if key in self._entries or key in self._pending or key in self._failed:
            return False
        self._pending.add(key)
        task = asyncio.create_task(self._translate(self._generation, self._language, key, text, source_language))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _translate(self, generation: int, language: str, key: str, text: str, source_language: str) -> None:
        result = await self._gateway.translate(text, language, source_language)
        self._completions.put_nowait(Completion(generation, key, result))
        if self._on_ready:
            self._on_ready()

    def drain(self) -> List[str]:
        """
        Применяет все готовые результаты текущего поколения.

        :return: Ключи, для которых появился перевод.
        """
        updated = []
        while True:
            try:
                completion = self._completions.get_nowait()
            except asyncio.QueueEmpty:
                break
            if completion.generation != self._generation:
                logging.debug(f"Discarding stale translation for {completion.key} (generation {completion.generation}).")
                continue
            self._pending.discard(completion.key)
            if completion.result.ok:
                self._entries[completion.key] = completion.result.translated_text
                updated.append(completion.key)
            else:
                self._failed.add(completion.key)
        return updated

    async def settle(self) -> List[str]:
        """Дожидается всех запросов в полете и применяет результаты."""
        while True:
            in_flight = [task for task in self._tasks if not task.done()]
            if not in_flight:
                break
            await asyncio.gather(*in_flight)
        return self.drain()

    def set_language(self, language: str) -> bool:
        """
        Меняет язык зрителя: весь кэш сбрасывается, поколение увеличивается.

        Повторный вызов с тем же языком ничего не делает.
        """
        language = normalize_language(language)
        if language == self._language:
            return False
        logging.info(f"Viewer language changed {self._language} -> {language}, invalidating {len(self._entries)} cached translations.")
        self._language = language
        self._generation += 1
        self._entries.clear()
        self._pending.clear()
        self._failed.clear()
        return True
