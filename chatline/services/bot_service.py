"""Assistant bot that answers inside conversations.

The response generator is an injected async callable
``generate(query, history) -> (text, sources)``; the bot user is resolved
once in ``start()`` instead of being looked up lazily on first use.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from chatline.core.async_utils import run_async
from chatline.core.config import settings
from chatline.core.errors import ValidationError
from chatline.db.enums import MessageType, Role
from chatline.db.models import User
from chatline.db.session import SessionLocal
from chatline.schemas.message import TextContent, content_text, parse_content
from chatline.services import conversation_service, identity_service, message_service

logger = logging.getLogger(__name__)

Generate = Callable[[str, list[dict[str, str]]], Awaitable[tuple[str, list[Any]]]]

HISTORY_LIMIT = 20


class BotResponder:
    def __init__(
        self,
        generate: Generate,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        history_limit: int = HISTORY_LIMIT,
        timeout: float | None = None,
    ):
        self.generate = generate
        self.session_factory = session_factory
        self.history_limit = history_limit
        self.timeout = timeout if timeout is not None else settings.LLM_TIMEOUT_SECONDS
        self.bot_user_id: UUID | None = None

    @property
    def started(self) -> bool:
        return self.bot_user_id is not None

    def start(self) -> UUID:
        """Find or create the bot user and mark it online."""
        with self.session_factory() as db:
            bot = identity_service.find_or_create_from_external_identity(
                db,
                settings.BOT_EXTERNAL_ID,
                {"name": settings.BOT_DISPLAY_NAME, "role": Role.ADMINISTRATOR.value},
            )
            bot.display_name = settings.BOT_DISPLAY_NAME
            bot.is_online = True
            db.commit()
            self.bot_user_id = bot.id
        logger.info("Bot responder started as user %s", self.bot_user_id)
        return self.bot_user_id

    def stop(self) -> None:
        if self.bot_user_id is None:
            return
        with self.session_factory() as db:
            bot = db.get(User, self.bot_user_id)
            if bot is not None:
                bot.is_online = False
                db.commit()
        logger.info("Bot responder stopped")
        self.bot_user_id = None

    def _history(self, db: Session, conversation_id: UUID) -> list[dict[str, str]]:
        recent = message_service.list_recent(db, conversation_id, self.history_limit)
        history = []
        for message in reversed(recent):
            if message.type == MessageType.SYSTEM.value:
                continue
            history.append(
                {
                    "role": "assistant" if message.sender_id == self.bot_user_id else "user",
                    "content": content_text(parse_content(message.content)),
                }
            )
        return history

    def respond(
        self,
        query: str,
        *,
        conversation_id: UUID | None = None,
        user_id: UUID | None = None,
    ) -> message_service.AppendResult:
        """
        Generate an answer and append it as the bot user.

        Without a conversation, the user's direct conversation with the bot
        is found or created. Generation is bounded by LLM_TIMEOUT_SECONDS.
        """
        if not self.started:
            raise RuntimeError("BotResponder.start() must be called before respond()")
        if not (query or "").strip():
            raise ValidationError("Query cannot be empty")

        with self.session_factory() as db:
            if conversation_id is None:
                if user_id is None:
                    raise ValidationError("conversation_id or user_id is required")
                conversation_id = conversation_service.find_or_create_direct(
                    db, user_id, self.bot_user_id
                ).id
            else:
                conversation_service.require_active_participant(db, conversation_id, self.bot_user_id)

            history = self._history(db, conversation_id)
            text, sources = run_async(
                self.generate(query, history),
                timeout=self.timeout,
                label="response generator",
            )
            text = (text or "").strip()[: settings.MAX_MESSAGE_TEXT_LENGTH]
            if not text:
                raise ValidationError("Response generator returned an empty answer")

            result = message_service.append(
                db,
                conversation_id,
                self.bot_user_id,
                MessageType.TEXT,
                TextContent(text=text, sources=list(sources or []) or None),
            )
            logger.info(
                "Bot answered in conversation %s (%s sources)", conversation_id, len(sources or [])
            )
            return result
