import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
from telegram import Chat, Message, MessageEntity, Update, User, Voice

import services.bot as bot
from services.recharge import RechargeStep
from services.shop import build_context

OPERATOR = 1
ADMIN = 3
PARTY = 7
STRANGER = 99


class FakeBot:
    def __init__(self):
        self.sent = []
        self.photos = []

    async def send_message(self, chat_id, text, **kwargs):
        self.sent.append((chat_id, text))

    async def send_photo(self, chat_id, photo, caption=None, reply_markup=None):
        self.photos.append({"chat_id": chat_id, "photo": photo, "caption": caption, "reply_markup": reply_markup})


class FakeMessage:
    def __init__(self, text=None, photo=None, document=None):
        self.text = text
        self.photo = photo or []
        self.document = document
        self.replies = []

    async def reply_text(self, text, reply_markup=None):
        self.replies.append(text)


class FakeQuery:
    def __init__(self, user_id, data):
        self.from_user = SimpleNamespace(id=user_id)
        self.data = data
        self.answers = []
        self.edited_text = None
        self.markup_cleared = False
        self.captions = []

    async def answer(self, text=None):
        self.answers.append(text)

    async def edit_message_text(self, text):
        self.edited_text = text

    async def edit_message_reply_markup(self, reply_markup=None):
        self.markup_cleared = reply_markup is None

    async def edit_message_caption(self, caption=None, reply_markup=None):
        self.captions.append((caption, reply_markup))


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def shop(tmp_path):
    config = {
        "telegram": {"operator_id": OPERATOR},
        "storage": {"db_path": str(tmp_path / "shop.db")},
        "recharge": {"payment_instructions": "KPay 09-000"},
    }
    ctx = build_context(config, client=SimpleNamespace())
    ctx.access.promote(ADMIN, actor_id=OPERATOR)
    return ctx


@pytest.fixture
def fake_bot():
    return FakeBot()


def _context(shop, fake_bot):
    return SimpleNamespace(application=SimpleNamespace(bot_data={bot.SHOP_KEY: shop}), bot=fake_bot)


def _message(shop, fake_bot, message, user_id=PARTY):
    update = SimpleNamespace(update_id=1, effective_user=SimpleNamespace(id=user_id), effective_message=message)
    _run(bot.handle_private_message(update, _context(shop, fake_bot)))
    return message.replies


def _click(shop, fake_bot, user_id, data):
    query = FakeQuery(user_id, data)
    _run(bot.handle_callback(SimpleNamespace(update_id=2, callback_query=query), _context(shop, fake_bot)))
    return query


def _escalated_review(shop, fake_bot):
    shop.sessions.start(PARTY)
    _message(shop, fake_bot, FakeMessage(text="1000"))
    _message(shop, fake_bot, FakeMessage(photo=[SimpleNamespace(file_id="small"), SimpleNamespace(file_id="large")]))
    return shop.sessions.pending_reviews()[0]


def test_amount_reply_includes_payment_instructions(shop, fake_bot):
    shop.sessions.start(PARTY)
    replies = _message(shop, fake_bot, FakeMessage(text="1000"))
    assert replies[0].startswith("To complete your top-up of 1000 MMK:")
    assert "KPay 09-000" in replies[0]


def test_invalid_amount_is_reprompted(shop, fake_bot):
    shop.sessions.start(PARTY)
    replies = _message(shop, fake_bot, FakeMessage(text="750"))
    assert replies == ["❌ Allowed amounts are 500, 1000, 2000, 5000, 10000 only."]
    assert shop.sessions.get(PARTY).step is RechargeStep.AWAITING_AMOUNT


def test_non_photo_while_awaiting_proof_is_reprompted(shop, fake_bot):
    shop.sessions.start(PARTY)
    _message(shop, fake_bot, FakeMessage(text="1000"))
    # A voice note carries neither text nor a photo.
    replies = _message(shop, fake_bot, FakeMessage())
    assert replies == ["❌ Please send a photo of payment proof or tap Cancel."]
    assert shop.sessions.get(PARTY).step is RechargeStep.AWAITING_PROOF
    assert fake_bot.photos == []


def test_messages_without_session_are_ignored(shop, fake_bot):
    assert _message(shop, fake_bot, FakeMessage(text="hello")) == []


def test_photo_escalates_to_review_chat_and_admins(shop, fake_bot):
    review = _escalated_review(shop, fake_bot)

    assert [p["chat_id"] for p in fake_bot.photos] == [OPERATOR, ADMIN]
    delivered = fake_bot.photos[0]
    assert delivered["photo"] == "large"
    assert f"Recharge request #{review.id} from user {PARTY}" in delivered["caption"]
    buttons = delivered["reply_markup"].inline_keyboard[0]
    assert [b.callback_data for b in buttons] == [f"rc:ok:{review.id}", f"rc:no:{review.id}"]
    assert shop.sessions.get(PARTY) is None


def test_image_document_counts_as_proof(shop, fake_bot):
    shop.sessions.start(PARTY)
    _message(shop, fake_bot, FakeMessage(text="500"))
    replies = _message(shop, fake_bot, FakeMessage(document=SimpleNamespace(mime_type="image/png", file_id="doc-1")))
    assert replies == ["🔔 Payment proof sent to admin for confirmation."]
    assert shop.sessions.pending_reviews()[0].proof_file_id == "doc-1"


def test_stranger_cannot_decide(shop, fake_bot):
    review = _escalated_review(shop, fake_bot)
    query = _click(shop, fake_bot, STRANGER, f"rc:ok:{review.id}")
    assert query.answers == ["❌ Permission denied."]
    assert shop.ledger.balance(PARTY) == Decimal(0)
    assert shop.sessions.review(review.id).status == "pending"


def test_admin_confirm_credits_once_and_removes_buttons(shop, fake_bot):
    review = _escalated_review(shop, fake_bot)

    query = _click(shop, fake_bot, ADMIN, f"rc:ok:{review.id}")
    assert shop.ledger.balance(PARTY) == Decimal(1000)
    assert (PARTY, "✅ Recharge successful! Your balance has increased by 1000 MMK.") in fake_bot.sent
    assert query.captions == [(f"✅ Recharge #{review.id} confirmed for user {PARTY} amount 1000 MMK.", None)]
    assert query.answers == ["Recharge confirmed."]

    replay = _click(shop, fake_bot, OPERATOR, f"rc:ok:{review.id}")
    assert replay.answers == [f"Request #{review.id} was already confirmed."]
    assert replay.markup_cleared is True
    assert shop.ledger.balance(PARTY) == Decimal(1000)


def test_reject_notifies_party_without_credit(shop, fake_bot):
    review = _escalated_review(shop, fake_bot)
    _click(shop, fake_bot, OPERATOR, f"rc:no:{review.id}")
    assert shop.sessions.review(review.id).status == "rejected"
    assert (PARTY, "❌ Recharge failed. Please try again or contact support.") in fake_bot.sent
    assert shop.ledger.balance(PARTY) == Decimal(0)


def test_cancel_button_ends_session(shop, fake_bot):
    shop.sessions.start(PARTY)
    query = _click(shop, fake_bot, PARTY, bot.CANCEL_CALLBACK)
    assert query.edited_text == "Recharge cancelled ❌"
    assert shop.sessions.get(PARTY) is None
    assert _click(shop, fake_bot, PARTY, bot.CANCEL_CALLBACK).answers == ["No active recharge."]


def _private_update(chat_type=Chat.PRIVATE, **fields):
    message = Message(
        message_id=1,
        date=datetime.now(timezone.utc),
        chat=Chat(id=PARTY, type=chat_type),
        from_user=User(id=PARTY, first_name="Su", is_bot=False),
        **fields,
    )
    return Update(update_id=1, message=message)


def test_recharge_filter_admits_any_private_non_command():
    assert bot.RECHARGE_MESSAGES.check_update(_private_update(voice=Voice("voice-1", "uniq-1", 3)))
    assert bot.RECHARGE_MESSAGES.check_update(_private_update(text="1000"))
    assert not bot.RECHARGE_MESSAGES.check_update(
        _private_update(text="/start", entities=[MessageEntity(MessageEntity.BOT_COMMAND, 0, 6)])
    )
    assert not bot.RECHARGE_MESSAGES.check_update(_private_update(chat_type=Chat.GROUP, text="1000"))
