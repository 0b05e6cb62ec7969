"""Tests for listrelay.dispatcher."""

from __future__ import annotations

import email
import email.policy
from enum import Enum

import pytest

from listrelay.dispatcher import (
    REPLY_SEPARATOR,
    CommandDispatcher,
    classify,
    is_valid_address,
)
from listrelay.errors import MessageBodyUnavailableError, PersistenceError, TransportDisconnectedError
from listrelay.models import Command, InboundMessage
from listrelay.store import RecipientStore
from tests.conftest import FakeTransport, _build_plain_email, make_message


@pytest.fixture
def store() -> RecipientStore:
    return RecipientStore(["alice@test.com", "bob@test.com"], ["alice@test.com"])


@pytest.fixture
def dispatcher(store: RecipientStore, fake_transport: FakeTransport) -> CommandDispatcher:
    return CommandDispatcher(store, fake_transport, "list@test.com")


def _reply_lines(raw: bytes) -> list[str]:
    msg = email.message_from_bytes(raw, policy=email.policy.default)
    return msg.get_content().splitlines()


def _reply_subject(raw: bytes) -> str:
    return str(email.message_from_bytes(raw, policy=email.policy.default)["Subject"])


class TestIsValidAddress:
    @pytest.mark.parametrize("address", ["a@x.com", "first.last@example.org", "x+tag@sub.example.com"])
    def test_valid(self, address: str):
        assert is_valid_address(address)

    @pytest.mark.parametrize(
        "address",
        ["", "not-an-email", "@x.com", "a@", "a b@x.com", "Alice <a@x.com>"],
    )
    def test_invalid(self, address: str):
        assert not is_valid_address(address)


class TestClassify:
    @pytest.mark.parametrize(
        ("sender", "subject", "expected"),
        [
            ("alice@test.com", "*show", Command.SHOW_LIST),
            ("bob@test.com", "*show", Command.SHOW_LIST),
            ("mallory@test.com", "*show", Command.REJECT),
            ("alice@test.com", "*add", Command.ADD_RECIPIENTS),
            ("bob@test.com", "*add", Command.FORWARD),
            ("mallory@test.com", "*add", Command.REJECT),
            ("bob@test.com", "Lunch?", Command.FORWARD),
            ("mallory@test.com", "Lunch?", Command.REJECT),
            ("alice@test.com", "*SHOW", Command.FORWARD),
            ("alice@test.com", " *show", Command.FORWARD),
        ],
    )
    def test_rules(self, store: RecipientStore, sender: str, subject: str, expected: Command):
        assert classify(make_message(sender=sender, subject=subject), store) is expected

    def test_admin_outside_list_may_add_but_not_show(self):
        store = RecipientStore(["bob@test.com"], ["root@test.com"])
        assert classify(make_message(sender="root@test.com", subject="*add"), store) is Command.ADD_RECIPIENTS
        assert classify(make_message(sender="root@test.com", subject="*show"), store) is Command.REJECT
        assert classify(make_message(sender="root@test.com", subject="hi"), store) is Command.REJECT

    def test_every_message_gets_exactly_one_command(self, store: RecipientStore):
        senders = ["alice@test.com", "bob@test.com", "mallory@test.com"]
        subjects = ["*show", "*add", "", "hello", "*show me"]
        for sender in senders:
            for subject in subjects:
                assert classify(make_message(sender=sender, subject=subject), store) in set(Command)


class TestCommandDispatcherConstruction:
    def test_missing_handler_is_rejected(self, store: RecipientStore, fake_transport: FakeTransport, monkeypatch):
        extended = Enum(
            "Command",
            {**{member.name: member.value for member in Command}, "ARCHIVE": "archive"},
            type=str,
        )
        monkeypatch.setattr("listrelay.dispatcher.Command", extended)
        with pytest.raises(TypeError, match="archive"):
            CommandDispatcher(store, fake_transport, "list@test.com")

    def test_handler_table_covers_all_commands(self, dispatcher: CommandDispatcher):
        assert set(dispatcher._handlers) == set(Command)


class TestShowList:
    @pytest.mark.asyncio
    async def test_replies_with_list(self, dispatcher: CommandDispatcher, fake_transport: FakeTransport):
        message = make_message(sender="bob@test.com", subject="*show")
        assert await dispatcher.dispatch(message) is Command.SHOW_LIST

        assert len(fake_transport.sent) == 1
        from_addr, to, raw = fake_transport.sent[0]
        assert from_addr == "list@test.com"
        assert to == ["bob@test.com"]
        assert _reply_subject(raw) == "Response: *show"
        assert _reply_lines(raw) == ["alice@test.com", "bob@test.com"]

    @pytest.mark.asyncio
    async def test_body_not_loaded(self, dispatcher: CommandDispatcher):
        message = make_message(sender="bob@test.com", subject="*show")
        await dispatcher.dispatch(message)
        assert message.loads == []


class TestAddRecipients:
    @pytest.mark.asyncio
    async def test_valid_and_invalid_lines(
        self,
        dispatcher: CommandDispatcher,
        store: RecipientStore,
        fake_transport: FakeTransport,
    ):
        message = make_message(subject="*add", body="a@x.com\r\n\r\nnot-an-email\r\n")
        assert await dispatcher.dispatch(message) is Command.ADD_RECIPIENTS

        assert store.contains("a@x.com")
        assert not store.contains("not-an-email")
        assert store.render() == ["alice@test.com", "bob@test.com", "a@x.com"]

        _, to, raw = fake_transport.sent[0]
        assert to == ["alice@test.com"]
        assert _reply_subject(raw) == "Response: *add"
        assert _reply_lines(raw) == [
            "Adding a@x.com",
            "Rejected: not-an-email",
            REPLY_SEPARATOR,
            "alice@test.com",
            "bob@test.com",
            "a@x.com",
        ]

    @pytest.mark.asyncio
    async def test_whitespace_is_trimmed(self, dispatcher: CommandDispatcher, store: RecipientStore):
        await dispatcher.dispatch(make_message(subject="*add", body="   c@x.com  \n\t\n"))
        assert store.contains("c@x.com")

    @pytest.mark.asyncio
    async def test_already_subscribed(
        self,
        dispatcher: CommandDispatcher,
        store: RecipientStore,
        fake_transport: FakeTransport,
    ):
        await dispatcher.dispatch(make_message(subject="*add", body="bob@test.com\nbob@test.com\n"))
        assert store.render().count("bob@test.com") == 1
        lines = _reply_lines(fake_transport.sent[0][2])
        assert lines[:2] == ["Already subscribed: bob@test.com", "Already subscribed: bob@test.com"]

    @pytest.mark.asyncio
    async def test_empty_body_replies_with_list(self, dispatcher: CommandDispatcher, fake_transport: FakeTransport):
        await dispatcher.dispatch(make_message(subject="*add", body=""))
        assert _reply_lines(fake_transport.sent[0][2]) == [REPLY_SEPARATOR, "alice@test.com", "bob@test.com"]

    @pytest.mark.asyncio
    async def test_persistence_failure_is_reported(self, fake_transport: FakeTransport):
        def _fail(recipients):
            raise PersistenceError("disk full")

        store = RecipientStore(["alice@test.com"], ["alice@test.com"], persist=_fail)
        dispatcher = CommandDispatcher(store, fake_transport, "list@test.com")
        await dispatcher.dispatch(make_message(subject="*add", body="new@x.com\n"))

        assert not store.contains("new@x.com")
        lines = _reply_lines(fake_transport.sent[0][2])
        assert lines[0] == "Failed to add new@x.com: disk full"

    @pytest.mark.asyncio
    async def test_unavailable_body_replies_then_raises(
        self,
        dispatcher: CommandDispatcher,
        store: RecipientStore,
        fake_transport: FakeTransport,
    ):
        async def _missing() -> bytes:
            return b""

        message = InboundMessage(uid="9", sender="alice@test.com", subject="*add", loader=_missing)
        with pytest.raises(MessageBodyUnavailableError):
            await dispatcher.dispatch(message)

        assert len(store) == 2
        lines = _reply_lines(fake_transport.sent[0][2])
        assert lines[0].startswith("Could not read message body:")
        assert lines[-2:] == ["alice@test.com", "bob@test.com"]


class TestForward:
    @pytest.mark.asyncio
    async def test_forwards_verbatim_to_everyone(self, dispatcher: CommandDispatcher, fake_transport: FakeTransport):
        raw = _build_plain_email(subject="Lunch?", from_addr="bob@test.com", body="hello")
        message = make_message(sender="bob@test.com", subject="Lunch?", raw=raw)

        assert await dispatcher.dispatch(message) is Command.FORWARD
        assert fake_transport.sent == [("list@test.com", ["alice@test.com", "bob@test.com"], raw)]

    @pytest.mark.asyncio
    async def test_sender_receives_own_copy(self, dispatcher: CommandDispatcher, fake_transport: FakeTransport):
        await dispatcher.dispatch(make_message(sender="bob@test.com", subject="hi"))
        assert "bob@test.com" in fake_transport.sent[0][1]


class TestReject:
    @pytest.mark.asyncio
    async def test_nothing_sent_and_body_not_loaded(
        self,
        dispatcher: CommandDispatcher,
        store: RecipientStore,
        fake_transport: FakeTransport,
    ):
        message = make_message(sender="mallory@evil.com", subject="*add", body="mallory@evil.com\n")
        assert await dispatcher.dispatch(message) is Command.REJECT

        assert fake_transport.sent == []
        assert message.loads == []
        assert not store.contains("mallory@evil.com")


class TestDispatchBatch:
    @pytest.mark.asyncio
    async def test_outcomes_in_order(self, dispatcher: CommandDispatcher):
        messages = [
            make_message("1", sender="bob@test.com", subject="*show"),
            make_message("2", sender="mallory@evil.com", subject="hi"),
            make_message("3", sender="bob@test.com", subject="hi"),
        ]
        report = await dispatcher.dispatch_batch(messages)

        assert report.outcomes == [
            ("1", Command.SHOW_LIST),
            ("2", Command.REJECT),
            ("3", Command.FORWARD),
        ]
        assert report.processed == 3
        assert report.rejected == 1
        assert report.failures == []

    @pytest.mark.asyncio
    async def test_send_failure_does_not_stop_batch(
        self,
        dispatcher: CommandDispatcher,
        fake_transport: FakeTransport,
    ):
        fake_transport.failing_recipients.add("bob@test.com")
        messages = [
            make_message("1", sender="bob@test.com", subject="*show"),
            make_message("2", sender="mallory@evil.com", subject="hi"),
        ]
        report = await dispatcher.dispatch_batch(messages)

        assert report.processed == 2
        assert [f.uid for f in report.failures] == ["1"]
        assert report.failures[0].command is Command.SHOW_LIST
        assert "refused" in report.failures[0].error

    @pytest.mark.asyncio
    async def test_mutation_visible_to_later_messages(
        self,
        dispatcher: CommandDispatcher,
        fake_transport: FakeTransport,
    ):
        messages = [
            make_message("1", sender="alice@test.com", subject="*add", body="carol@test.com\n"),
            make_message("2", sender="carol@test.com", subject="hi from carol"),
        ]
        report = await dispatcher.dispatch_batch(messages)

        assert report.outcomes[1] == ("2", Command.FORWARD)
        assert fake_transport.sent[-1][1] == ["alice@test.com", "bob@test.com", "carol@test.com"]

    @pytest.mark.asyncio
    async def test_each_message_reported_as_handled(
        self,
        dispatcher: CommandDispatcher,
        fake_transport: FakeTransport,
    ):
        fake_transport.failing_recipients.add("bob@test.com")
        handled: list[str] = []

        async def _handled(uid: str) -> None:
            handled.append(uid)

        messages = [
            make_message("1", sender="bob@test.com", subject="*show"),
            make_message("2", sender="mallory@evil.com", subject="hi"),
        ]
        await dispatcher.dispatch_batch(messages, on_dispatched=_handled)

        # A recovered failure still counts as handled
        assert handled == ["1", "2"]

    @pytest.mark.asyncio
    async def test_dropped_connection_ends_batch(
        self,
        dispatcher: CommandDispatcher,
        fake_transport: FakeTransport,
    ):
        async def _dropped() -> bytes:
            raise TransportDisconnectedError("socket closed")

        handled: list[str] = []

        async def _handled(uid: str) -> None:
            handled.append(uid)

        messages = [
            make_message("1", sender="bob@test.com", subject="first"),
            InboundMessage(uid="2", sender="bob@test.com", subject="second", loader=_dropped),
            make_message("3", sender="bob@test.com", subject="third"),
        ]
        with pytest.raises(TransportDisconnectedError):
            await dispatcher.dispatch_batch(messages, on_dispatched=_handled)

        assert handled == ["1"]
        assert len(fake_transport.sent) == 1
        assert messages[2].loads == []
