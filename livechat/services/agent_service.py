"""
Сервис для управления агентами поддержки.
"""
import logging
from typing import Dict, Optional

from livechat.core.config import settings
from livechat.core.exceptions import AuthenticationError, ConfigurationError, RepositoryError
from livechat.models.models import AgentProfile, Department
from livechat.services.chat_repository import ChatRepository

# Локальный кэш языка агентов на случай недоступности хранилища
_local_languages: Dict[str, str] = {}


def get_department_agents() -> Dict[str, str]:
    return dict(settings.DEPARTMENT_AGENTS)


def get_agent_for_department(department: Department, department_agents: Optional[Dict[str, str]] = None) -> str:
    """
    Возвращает ID агента, назначенного на отдел.

    :raises ConfigurationError: Если агент для отдела не настроен.
    """
    agents = department_agents if department_agents is not None else get_department_agents()
    agent_id = agents.get(Department(department).value)
    if not agent_id:
        raise ConfigurationError(f"No agent configured for department '{Department(department).value}'.")
    return agent_id


def get_department_for_agent(agent_id: str, department_agents: Optional[Dict[str, str]] = None) -> Department:
    """
    Обратный поиск отдела по ID агента.

    :raises AuthenticationError: Если пользователь не является агентом.
    """
    agents = department_agents if department_agents is not None else get_department_agents()
    for department, configured_id in agents.items():
        if configured_id == str(agent_id):
            return Department(department)
    raise AuthenticationError(f"User {agent_id} is not a registered support agent.")


def sync_agents_from_settings(repository: ChatRepository) -> None:
    """
    Синхронизирует профили агентов в БД с таблицей отдел -> агент из настроек.

    - Добавляет новых агентов.
    - Активирует существующих агентов и обновляет их отдел.
    - Деактивирует агентов, которых убрали из настроек.
    """
    logging.info("Starting agent synchronization from settings...")
    configured = {agent_id: Department(department) for department, agent_id in get_department_agents().items()}

    for profile in repository.list_agent_profiles():
        if profile.agent_id in configured:
            department = configured.pop(profile.agent_id)
            if not profile.is_active or profile.department != department:
                profile.is_active = True
                profile.department = department
                repository.save_agent_profile(profile)
                logging.info(f"Reactivated agent {profile.agent_id} for {department.value}.")
        elif profile.is_active:
            profile.is_active = False
            repository.save_agent_profile(profile)
            logging.info(f"Deactivated agent with ID: {profile.agent_id}")

    for agent_id, department in configured.items():
        repository.save_agent_profile(
            AgentProfile(
                agent_id=agent_id,
                department=department,
                preferred_language=settings.DEFAULT_LANGUAGE,
                is_active=True,
            )
        )
        logging.info(f"Added new agent with ID: {agent_id}")

    logging.info("Agent synchronization finished.")


def get_preferred_language(repository: ChatRepository, agent_id: str) -> str:
    """Язык агента из хранилища, из локального кэша, либо язык по умолчанию."""
    try:
        profile = repository.get_agent_profile(agent_id)
    except RepositoryError as e:
        logging.warning(f"Could not load profile of agent {agent_id}, using local cache: {e}")
        return _local_languages.get(agent_id, settings.DEFAULT_LANGUAGE)
    if profile is None:
        return _local_languages.get(agent_id, settings.DEFAULT_LANGUAGE)
    _local_languages[agent_id] = profile.preferred_language
    return profile.preferred_language


def set_preferred_language(repository: ChatRepository, agent_id: str, language: str) -> bool:
    """
    Сохраняет язык агента.

    Язык всегда запоминается локально. Если хранилище недоступно,
    возвращает False и продолжает работать по локальному кэшу.
    """
    _local_languages[agent_id] = language
    try:
        profile = repository.get_agent_profile(agent_id)
        if profile is None:
            profile = AgentProfile(agent_id=agent_id, department=get_department_for_agent(agent_id))
        profile.preferred_language = language
        repository.save_agent_profile(profile)
    except RepositoryError as e:
        logging.warning(f"Failed to persist language of agent {agent_id}, kept locally: {e}")
        return False
    logging.info(f"Agent {agent_id} now reads chats in '{language}'.")
    return True
