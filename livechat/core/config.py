"""
Модуль конфигурации проекта.

Загружает настройки из переменных окружения и .env файла.
Использует Pydantic V2 для валидации данных.
"""
from typing import Dict

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

KNOWN_DEPARTMENTS = ("doctor", "payments")


class Settings(BaseSettings):
    """
    Класс для хранения и валидации настроек приложения.
    """
    # Модель для загрузки переменных из .env файла
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # --- Telegram Bot Settings ---
    BOT_TOKEN: SecretStr

    # --- Storage Settings ---
    DATABASE_URL: str = "sqlite:///live_chat.db"
    DB_ECHO: bool = False

    # --- Department -> Agent Settings ---
    DEPARTMENT_AGENTS: str  # Ожидается строка вида "doctor:123,payments:456"

    # --- Translation Settings ---
    TRANSLATE_API_KEY: SecretStr = SecretStr("")
    TRANSLATE_ENDPOINT: str = "https://translation.googleapis.com/language/translate/v2"
    TRANSLATE_TIMEOUT: float = 10.0
    DEFAULT_LANGUAGE: str = "en"

    # --- Chat View Settings ---
    SCROLL_THRESHOLD: int = 20

    @field_validator("DEPARTMENT_AGENTS")
    @classmethod
    def parse_department_agents(cls, v: str) -> Dict[str, str]:
        """Преобразует строку "отдел:агент" через запятую в словарь."""
        if not v:
            raise ValueError("DEPARTMENT_AGENTS не может быть пустым.")
        mapping = {}
        for pair in v.split(","):
            department, sep, agent_id = pair.partition(":")
            department, agent_id = department.strip().lower(), agent_id.strip()
            if not sep or not agent_id:
                raise ValueError(f"Некорректная пара отдел:агент: {pair!r}")
            if department not in KNOWN_DEPARTMENTS:
                raise ValueError(f"Неизвестный отдел: {department!r}")
            mapping[department] = agent_id
        return mapping

    @field_validator("DEFAULT_LANGUAGE")
    @classmethod
    def normalize_language(cls, v: str) -> str:
        return v.strip().lower()


# Создаем единственный экземпляр настроек для всего приложения
settings = Settings()
