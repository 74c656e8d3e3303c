"""
Шлюз к внешнему сервису перевода (Google Translate v2).

Шлюз никогда не бросает исключений наружу: при любой ошибке возвращается
исходный текст и описание ошибки, чтобы доставка сообщений не блокировалась.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp
from pydantic import BaseModel

from livechat.core.config import Settings
from livechat.core.exceptions import TranslationServiceError
from livechat.core.languages import normalize_language

AUTO = "auto"


class TranslationResult(BaseModel):
    translated_text: str
    detected_language: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TranslationGateway:
    """
    Клиент Google Translate v2.

    Одна попытка на вызов, без повторов. Решение о повторном переводе
    (например, после смены языка) принимает вызывающий код.
    """

    def __init__(self, api_key: str, endpoint: str, timeout: float = 10.0, default_language: str = "en"):
        self.api_key = api_key
        self.endpoint = endpoint.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.default_language = default_language

    async def translate(
        self, text: str, target_language: str, source_language: str = AUTO
    ) -> TranslationResult:
        target_language = normalize_language(target_language)
        source_language = normalize_language(source_language) or AUTO

        if not text or not text.strip():
            return TranslationResult(translated_text=text, detected_language=source_language)
        if source_language != AUTO and source_language == target_language:
            return TranslationResult(translated_text=text, detected_language=source_language)

        try:
            return await self._translate_remote(text, target_language, source_language)
        except (aiohttp.ClientError, asyncio.TimeoutError, TranslationServiceError, ValueError) as e:
            logging.warning(f"Translation to '{target_language}' failed, falling back to original text: {e}")
            return TranslationResult(translated_text=text, detected_language=source_language, error=str(e))

    async def detect_language(self, text: str) -> Tuple[str, float]:
        """Определяет язык текста. При ошибке возвращает язык по умолчанию с нулевой уверенностью."""
        if not text or not text.strip():
            return self.default_language, 0.0
        try:
            data = await self._post(f"{self.endpoint}/detect", {"q": text})
            detection = data["data"]["detections"][0][0]
            return detection["language"], float(detection.get("confidence") or 0.0)
        except (aiohttp.ClientError, asyncio.TimeoutError, TranslationServiceError, ValueError,
                KeyError, IndexError, TypeError) as e:
            logging.warning(f"Language detection failed: {e}")
            return self.default_language, 0.0

    async def _translate_remote(self, text: str, target_language: str, source_language: str) -> TranslationResult:
        payload: Dict[str, Any] = {"q": text, "target": target_language, "format": "text"}
        if source_language != AUTO:
            payload["source"] = source_language

        data = await self._post(self.endpoint, payload)
        try:
            translation = data["data"]["translations"][0]
            translated_text = translation["translatedText"]
        except (KeyError, IndexError, TypeError) as e:
            raise TranslationServiceError(f"Invalid response from translation service: {data!r}") from e
        return TranslationResult(
            translated_text=translated_text,
            detected_language=translation.get("detectedSourceLanguage") or source_language,
        )

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.post(url, params={"key": self.api_key}, json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise TranslationServiceError(f"Translation API error: {resp.status} {body[:200]}")
                return await resp.json()


# Несколько заготовленных фраз для работы без ключа API
MOCK_PHRASES: Dict[str, Dict[str, str]] = {
    "hello": {"es": "Hola", "fr": "Bonjour", "de": "Hallo", "it": "Ciao", "pt": "Olá", "ru": "Привет"},
    "thank you": {"es": "Gracias", "fr": "Merci", "de": "Danke", "it": "Grazie", "pt": "Obrigado", "ru": "Спасибо"},
}


class MockTranslationGateway(TranslationGateway):
    """
    Шлюз для разработки без ключа Google Translate.

    Знает пару фраз, остальной текст помечает тегом языка: "[ES] text".
    """

    def __init__(self, default_language: str = "en"):
        super().__init__(api_key="", endpoint="mock://translate", default_language=default_language)

    async def _translate_remote(self, text: str, target_language: str, source_language: str) -> TranslationResult:
        phrase = MOCK_PHRASES.get(text.strip().lower(), {})
        if target_language in phrase:
            return TranslationResult(translated_text=phrase[target_language], detected_language=self.default_language)
        if target_language == self.default_language:
            return TranslationResult(translated_text=text, detected_language=self.default_language)
        return TranslationResult(
            translated_text=f"[{target_language.upper()}] {text}",
            detected_language=self.default_language,
        )

    async def detect_language(self, text: str) -> Tuple[str, float]:
        return self.default_language, 0.0


def build_gateway(settings: Settings) -> TranslationGateway:
    """Шлюз Google Translate, если задан ключ, иначе заглушка для разработки."""
    api_key = settings.TRANSLATE_API_KEY.get_secret_value()
    if not api_key:
        logging.warning("TRANSLATE_API_KEY is not set, using mock translation gateway.")
        return MockTranslationGateway(default_language=settings.DEFAULT_LANGUAGE)
    return TranslationGateway(
        api_key=api_key,
        endpoint=settings.TRANSLATE_ENDPOINT,
        timeout=settings.TRANSLATE_TIMEOUT,
        default_language=settings.DEFAULT_LANGUAGE,
    )
