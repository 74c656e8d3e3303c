"""
Сценарий бота перед началом чата.

welcome -> ask_name -> ask_phone -> ask_language -> department_selection -> chat

Переходы заданы таблицей (состояние, событие) -> состояние. Единственный
переход назад - "back" к выбору роли. Сообщения бота живут только в этом
объекте и никогда не сохраняются в хранилище.
"""
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from livechat.core.exceptions import InvalidTransitionError
from livechat.core.languages import is_supported, normalize_language
from livechat.models.models import Department

PHONE_RE = re.compile(r"^\+?[\d\s\-()]{7,20}$")


class BotState(str, Enum):
    WELCOME = "welcome"
    ASK_NAME = "ask_name"
    ASK_PHONE = "ask_phone"
    ASK_LANGUAGE = "ask_language"
    DEPARTMENT_SELECTION = "department_selection"
    CHAT = "chat"


class BotEvent(str, Enum):
    CHOOSE_CUSTOMER = "choose_customer"
    TEXT = "text"
    LANGUAGE_SELECTED = "language_selected"
    DEPARTMENT_SELECTED = "department_selected"
    BACK = "back"


TRANSITIONS: Dict[tuple, BotState] = {
    (BotState.WELCOME, BotEvent.CHOOSE_CUSTOMER): BotState.ASK_NAME,
    (BotState.ASK_NAME, BotEvent.TEXT): BotState.ASK_PHONE,
    (BotState.ASK_PHONE, BotEvent.TEXT): BotState.ASK_LANGUAGE,
    (BotState.ASK_LANGUAGE, BotEvent.LANGUAGE_SELECTED): BotState.DEPARTMENT_SELECTION,
    (BotState.DEPARTMENT_SELECTION, BotEvent.DEPARTMENT_SELECTED): BotState.CHAT,
}

# Из любого состояния до чата можно вернуться к выбору роли
for _state in (BotState.ASK_NAME, BotState.ASK_PHONE, BotState.ASK_LANGUAGE, BotState.DEPARTMENT_SELECTION):
    TRANSITIONS[(_state, BotEvent.BACK)] = BotState.WELCOME

PROMPTS: Dict[BotState, str] = {
    BotState.WELCOME: "Welcome to HealthBuddy! Our bot guide can help you through the process. Please select your role to start chatting.",
    BotState.ASK_NAME: "Hi! What is your name?",
    BotState.ASK_PHONE: "Thanks, {name}! What phone number can we reach you at?",
    BotState.ASK_LANGUAGE: "Which language would you like to chat in?",
    BotState.DEPARTMENT_SELECTION: "Please select a department to start chatting with the next available agent.",
    BotState.CHAT: "You are now connected to the {department} department. An agent will reply shortly.",
}

RETRY_PROMPTS: Dict[BotState, str] = {
    BotState.ASK_NAME: "Please tell us your name so the agent knows how to address you.",
    BotState.ASK_PHONE: "That does not look like a phone number. Please enter digits, optionally starting with +.",
    BotState.ASK_LANGUAGE: "Please pick a language from the list.",
    BotState.DEPARTMENT_SELECTION: "Please pick one of the departments.",
}


@dataclass
class BotMessage:
    """Сообщение бота. id стабилен, по нему кэшируется перевод."""
    id: str
    text: str


@dataclass
class PreChatFlow:
    state: BotState = BotState.WELCOME
    name: Optional[str] = None
    phone: Optional[str] = None
    language: Optional[str] = None
    department: Optional[Department] = None
    transcript: List[BotMessage] = field(default_factory=list)
    sequence: int = 0

    @property
    def display_language(self) -> str:
        """Язык, на который переводятся сообщения бота. До выбора - английский."""
        return self.language or "en"

    @property
    def is_complete(self) -> bool:
        return self.state == BotState.CHAT

    def start(self) -> List[BotMessage]:
        """Приветствие. Вызывается при открытии диалога."""
        return [self._say(PROMPTS[BotState.WELCOME])]

    def handle(self, event: BotEvent, value: Optional[str] = None) -> List[BotMessage]:
        """
        Применяет событие пользователя.

        :return: Новые сообщения бота.
        :raises InvalidTransitionError: Событие недопустимо в текущем состоянии.
        """
        event = BotEvent(event)
        target = TRANSITIONS.get((self.state, event))
        if target is None:
            raise InvalidTransitionError(f"Event '{event.value}' is not allowed in state '{self.state.value}'.")

        if event == BotEvent.BACK:
            self._reset()
            return [self._say(PROMPTS[BotState.WELCOME])]

        if not self._accept(value):
            return [self._say(RETRY_PROMPTS[self.state])]

        self.state = target
        return [self._say(self._prompt_for(target))]

    def _accept(self, value: Optional[str]) -> bool:
        value = (value or "").strip()
        if self.state == BotState.ASK_NAME:
            if not value:
                return False
            self.name = value
        elif self.state == BotState.ASK_PHONE:
            if not PHONE_RE.match(value):
                return False
            self.phone = value
        elif self.state == BotState.ASK_LANGUAGE:
            if not is_supported(value):
                return False
            self.language = normalize_language(value)
        elif self.state == BotState.DEPARTMENT_SELECTION:
            try:
                self.department = Department(value.lower())
            except ValueError:
                return False
        return True

    def _prompt_for(self, state: BotState) -> str:
        text = PROMPTS[state]
        if state == BotState.ASK_PHONE:
            return text.format(name=self.name)
        if state == BotState.CHAT:
            return text.format(department=self.department.value.title())
        return text

    def _say(self, text: str) -> BotMessage:
        self.sequence += 1
        message = BotMessage(id=f"{self.state.value}-{self.sequence}", text=text)
        self.transcript.append(message)
        return message

    def _reset(self) -> None:
        self.state = BotState.WELCOME
        self.name = None
        self.phone = None
        self.language = None
        self.department = None

    def snapshot(self) -> Dict[str, Any]:
        """Состояние сценария в виде словаря для хранилища FSM aiogram."""
        return {
            "state": self.state.value,
            "name": self.name,
            "phone": self.phone,
            "language": self.language,
            "department": self.department.value if self.department else None,
            "sequence": self.sequence,
        }

    @classmethod
    def restore(cls, data: Optional[Dict[str, Any]]) -> "PreChatFlow":
        if not data:
            return cls()
        return cls(
            state=BotState(data.get("state", BotState.WELCOME.value)),
            name=data.get("name"),
            phone=data.get("phone"),
            language=data.get("language"),
            department=Department(data["department"]) if data.get("department") else None,
            sequence=data.get("sequence", 0),
        )
