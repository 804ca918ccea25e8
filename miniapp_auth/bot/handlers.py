from aiogram import Router
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup, Message, WebAppInfo
from aiogram.filters import Command

# Создаем роутер для регистрации обработчиков.
# Это позволяет нам модульно подключать логику.
router = Router()

def webapp_keyboard(webapp_url: str) -> InlineKeyboardMarkup:
    # Кнопка открывает Mini App: только так клиент получает подписанный initData
    return InlineKeyboardMarkup(inline_keyboard=[[
        InlineKeyboardButton(text="💎 Открыть витрину", web_app=WebAppInfo(url=webapp_url)),
    ]])

# Обработчик команды /start.
# webapp_url приходит из workflow data диспетчера (dp["webapp_url"])
@router.message(Command("start"))
async def command_start_handler(message: Message, webapp_url: str = "") -> None:
    """Приветствует пользователя и даёт кнопку входа в Mini App."""
    if not webapp_url:
        await message.answer("Mini App пока не настроен, загляните позже.")
        return

    await message.answer(
        f"Привет, {message.from_user.full_name}! Управляйте бриллиантами прямо в Telegram.",
        reply_markup=webapp_keyboard(webapp_url),
    )
