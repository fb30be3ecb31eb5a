"""Telegram long-polling transport built on python-telegram-bot.

Only private chats from the allowlisted user reach the bridge. Replies are
stripped of code fences and split into paragraph-aware chunks; a reply
keyboard, when present, rides on the last chunk only.
"""

from __future__ import annotations

import logging
from pathlib import Path

from telegram import Message, ReplyKeyboardMarkup, Update
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from codexbridge.backends.codex import NO_OUTPUT
from codexbridge.bridge import Bridge, ImageFetcher, IncomingMessage, Reply
from codexbridge.output import chunk_text, format_error, strip_code_fences

logger = logging.getLogger(__name__)

CHUNK_MARGIN = 20

INCOMING_FILTER = filters.ChatType.PRIVATE & (
    filters.TEXT | filters.PHOTO | filters.Document.IMAGE
)


def has_image(message: Message) -> bool:
    if message.photo:
        return True
    document = message.document
    return bool(document and (document.mime_type or "").startswith("image/"))


def image_fetcher(message: Message) -> ImageFetcher | None:
    if not has_image(message):
        return None

    async def fetch(inputs_dir: Path) -> Path | None:
        if message.photo:
            # Largest size is last.
            file_obj = message.photo[-1]
            suffix = ".jpg"
        else:
            file_obj = message.document
            suffix = Path(message.document.file_name or "").suffix or ".jpg"
        telegram_file = await file_obj.get_file()
        target = inputs_dir / f"{message.chat_id}-{message.message_id}-{file_obj.file_unique_id}{suffix}"
        await telegram_file.download_to_drive(target)
        logger.info("Downloaded image to %s", target)
        return target

    return fetch


def reply_markup(reply: Reply) -> ReplyKeyboardMarkup | None:
    if not reply.keyboard:
        return None
    return ReplyKeyboardMarkup(
        reply.keyboard,
        resize_keyboard=True,
        one_time_keyboard=reply.one_time_keyboard,
    )


def render_chunks(text: str, max_message: int) -> list[str]:
    safe = strip_code_fences(text or NO_OUTPUT)
    return chunk_text(safe, max_message - CHUNK_MARGIN) or [NO_OUTPUT]


class TelegramTransport:
    def __init__(self, bridge: Bridge, token: str, allowed_user_id: int) -> None:
        self.bridge = bridge
        self.token = token
        self.allowed_user_id = allowed_user_id
        self.max_message = bridge.config.telegram.max_message

    def build_application(self) -> Application:
        application = Application.builder().token(self.token).concurrent_updates(True).build()
        application.add_handler(MessageHandler(INCOMING_FILTER, self.on_message))
        application.add_error_handler(self.on_error)
        return application

    def is_allowed(self, update: Update) -> bool:
        user = update.effective_user
        chat = update.effective_chat
        if chat is None or chat.type != "private":
            return False
        return user is not None and user.id == self.allowed_user_id

    async def send(self, message: Message, reply: Reply) -> None:
        if reply.is_error:
            await message.get_bot().send_message(message.chat_id, reply.text)
            return
        chunks = render_chunks(reply.text, self.max_message)
        markup = reply_markup(reply)
        for index, chunk in enumerate(chunks):
            is_last = index == len(chunks) - 1
            await message.get_bot().send_message(
                message.chat_id,
                chunk,
                reply_markup=markup if is_last else None,
            )

    async def on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if message is None or not self.is_allowed(update):
            if update.effective_user is not None:
                logger.info("Ignoring message from user %s", update.effective_user.id)
            return

        incoming = IncomingMessage(
            chat_id=message.chat_id,
            text=(message.text or message.caption or "").strip(),
            fetch_image=image_fetcher(message),
        )

        async def send(reply: Reply) -> None:
            await self.send(message, reply)

        await self.bridge.handle(incoming, send)

    async def on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error("Unhandled error while processing update", exc_info=context.error)
        if isinstance(update, Update) and update.effective_chat is not None and self.is_allowed(update):
            await context.bot.send_message(
                update.effective_chat.id,
                format_error(context.error, self.max_message),
            )

    def run(self) -> None:
        application = self.build_application()
        logger.info("Polling Telegram for updates")
        application.run_polling(allowed_updates=Update.ALL_TYPES)
