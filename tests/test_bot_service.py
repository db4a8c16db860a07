"""Tests for the assistant bot responder."""
import uuid

import anyio
import pytest

from chatline.core.errors import ExternalTimeoutError, NotParticipantError, ValidationError
from chatline.db.models import User
from chatline.services import conversation_service, message_service
from chatline.services.bot_service import BotResponder


class ScriptedGenerator:
    """Async generator double that records every (query, history) it receives."""

    def __init__(self, answer="Try turning it off and on again.", sources=None, delay=0.0):
        self.answer = answer
        self.sources = sources if sources is not None else ["kb/reset"]
        self.delay = delay
        self.calls = []

    async def __call__(self, query, history):
        self.calls.append((query, history))
        if self.delay:
            await anyio.sleep(self.delay)
        return self.answer, self.sources


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def bot(db, generator):
    responder = BotResponder(generator, timeout=5)
    responder.start()
    yield responder
    responder.stop()


def test_start_creates_online_bot_user(db, bot):
    user = db.get(User, bot.bot_user_id)
    assert user.display_name == "Assistant"
    assert user.is_online is True

    # Starting again resolves the same user
    assert BotResponder(ScriptedGenerator()).start() == bot.bot_user_id


def test_stop_marks_bot_offline(db, generator):
    responder = BotResponder(generator)
    bot_id = responder.start()
    responder.stop()

    assert responder.started is False
    db.expire_all()
    assert db.get(User, bot_id).is_online is False


def test_respond_requires_start(generator):
    with pytest.raises(RuntimeError):
        BotResponder(generator).respond("hi", user_id=uuid.uuid4())


def test_respond_opens_direct_conversation(db, bot, generator, alice):
    result = bot.respond("My router is broken", user_id=alice.id)

    assert result.created is True
    message = result.message
    assert message.sender_id == bot.bot_user_id
    assert message.content == {
        "kind": "text",
        "text": "Try turning it off and on again.",
        "sources": ["kb/reset"],
    }
    conversation = conversation_service.find_or_create_direct(db, alice.id, bot.bot_user_id)
    assert message.conversation_id == conversation.id
    assert generator.calls[0] == ("My router is broken", [])


def test_respond_passes_conversation_history(db, bot, generator, alice):
    conversation = conversation_service.find_or_create_direct(db, alice.id, bot.bot_user_id)
    message_service.append(db, conversation.id, alice.id, "text", {"kind": "text", "text": "Hello"})
    bot.respond("first", conversation_id=conversation.id)
    message_service.append(db, conversation.id, alice.id, "text", {"kind": "text", "text": "Still broken"})

    bot.respond("second", conversation_id=conversation.id)

    _, history = generator.calls[-1]
    assert history == [
        {"role": "user", "content": "Hello"},
        {"role": "assistant", "content": "Try turning it off and on again."},
        {"role": "user", "content": "Still broken"},
    ]


def test_respond_outside_membership_rejected(db, bot, alice, bob):
    conversation = conversation_service.find_or_create_direct(db, alice.id, bob.id)
    with pytest.raises(NotParticipantError):
        bot.respond("hi", conversation_id=conversation.id)


def test_respond_validation(bot):
    with pytest.raises(ValidationError):
        bot.respond("   ", user_id=uuid.uuid4())
    with pytest.raises(ValidationError):
        bot.respond("hi")


def test_empty_answer_is_not_posted(db, alice):
    responder = BotResponder(ScriptedGenerator(answer="   "))
    responder.start()
    with pytest.raises(ValidationError):
        responder.respond("hello?", user_id=alice.id)
    conversation = conversation_service.find_or_create_direct(db, alice.id, responder.bot_user_id)
    assert message_service.list_recent(db, conversation.id) == []


def test_slow_generator_times_out(db, alice):
    responder = BotResponder(ScriptedGenerator(delay=1), timeout=0.05)
    responder.start()
    with pytest.raises(ExternalTimeoutError):
        responder.respond("hello?", user_id=alice.id)
