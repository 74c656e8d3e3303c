"""
Инлайн-клавиатуры сценария бота и списка чатов агента.
"""
from typing import List

from aiogram.types import InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

from livechat.core.languages import picker_options
from livechat.models.models import ChatSession, Department


def role_keyboard() -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.button(text="🙋 I'm a Customer", callback_data="role:customer")
    builder.button(text="🧑‍💻 I'm an Agent", callback_data="role:agent")
    builder.adjust(1)
    return builder.as_markup()


def back_keyboard() -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.button(text="⬅️ Back", callback_data="back")
    return builder.as_markup()


def language_keyboard(with_back: bool = True) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for code, native_name in picker_options():
        builder.button(text=native_name, callback_data=f"lang:{code}")
    if with_back:
        builder.button(text="⬅️ Back", callback_data="back")
    builder.adjust(2)
    return builder.as_markup()


def department_keyboard() -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    builder.button(text="🏥 Doctor Department", callback_data=f"dept:{Department.DOCTOR.value}")
    builder.button(text="💳 Payments Department", callback_data=f"dept:{Department.PAYMENTS.value}")
    builder.button(text="⬅️ Back", callback_data="back")
    builder.adjust(1)
    return builder.as_markup()


def inbox_keyboard(sessions: List[ChatSession]) -> InlineKeyboardMarkup:
    builder = InlineKeyboardBuilder()
    for chat in sessions:
        who = chat.customer_name or f"User {chat.customer_id[:8]}"
        builder.button(
            text=f"{who} · {chat.customer_language} · {chat.last_message_at:%H:%M}",
            callback_data=f"open:{chat.id}",
        )
    builder.button(text="🔄 Refresh", callback_data="inbox:refresh")
    builder.adjust(1)
    return builder.as_markup()
