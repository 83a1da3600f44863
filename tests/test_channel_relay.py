"""
Tests for ChannelRelay: channel posts become rendezvous outcomes and
owner notices, and a bad post never breaks the relay.
"""

import asyncio

import pytest

from channel_relay import ChannelRelay
from rendezvous import SessionLoggedOut
from status_lines import ConnectedEvent, LogoutEvent, UnrecognizedEvent


@pytest.fixture
def relay(db, rendezvous, notifier, config):
    return ChannelRelay(db, rendezvous, notifier, config)


class TestLogoutNotices:
    """Tests for 'has logged out' posts."""

    @pytest.mark.asyncio
    async def test_rejects_pending_wait_and_notifies_owner(self, relay, db, rendezvous, notifier):
        db.upsert_ownership(42, "mybot-01", "sid")
        waiter = asyncio.create_task(rendezvous.wait_for("mybot-01", 5))
        await asyncio.sleep(0)

        event = await relay.handle_text("User [mybot-01] has logged out.")

        assert event == LogoutEvent("mybot-01")
        with pytest.raises(SessionLoggedOut):
            await waiter
        notifier.send.assert_awaited_once()
        args, kwargs = notifier.send.call_args
        assert args[0] == 42
        button = kwargs["buttons"][0][0]
        assert button.callback_data == "update_session:mybot-01"

    @pytest.mark.asyncio
    async def test_notifies_owner_without_pending_wait(self, relay, db, notifier):
        db.upsert_ownership(42, "mybot-01", "sid")

        await relay.handle_text("User [mybot-01] has logged out.")

        assert notifier.send.call_args[0][0] == 42

    @pytest.mark.asyncio
    async def test_no_owner_does_not_raise(self, relay, notifier):
        """Only the operator hears about logouts of unknown apps."""
        event = await relay.handle_text("User [ghost-app] has logged out.")

        assert event == LogoutEvent("ghost-app")
        notifier.send.assert_not_awaited()
        notifier.notify_admin.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_notifier_failure_is_contained(self, relay, db, notifier):
        db.upsert_ownership(42, "mybot-01", "sid")
        notifier.send.side_effect = RuntimeError("boom")

        event = await relay.handle_text("User [mybot-01] has logged out.")

        assert event == LogoutEvent("mybot-01")


class TestConnectedNotices:
    """Tests for 'connected' posts."""

    @pytest.mark.asyncio
    async def test_resolves_pending_wait(self, relay, rendezvous, notifier):
        waiter = asyncio.create_task(rendezvous.wait_for("mybot-01", 5))
        await asyncio.sleep(0)

        event = await relay.handle_text("✅ [mybot-01] connected.\n🔐 sid")

        assert event == ConnectedEvent("mybot-01")
        assert await waiter is True
        notifier.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_without_wait_or_owner_is_silent(self, relay, notifier):
        await relay.handle_text("[ghost-app] connected.")

        notifier.send.assert_not_awaited()
        notifier.notify_admin.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_without_wait_tells_owner(self, relay, db, notifier):
        db.upsert_ownership(42, "mybot-01", "sid")

        await relay.handle_text("[mybot-01] connected.")

        assert notifier.send.call_args[0][0] == 42


class TestUnrelatedPosts:
    @pytest.mark.asyncio
    async def test_ignored(self, relay, rendezvous, notifier):
        rendezvous.register("mybot-01")

        event = await relay.handle_text("R14 memory error detected for [mybot-01]")

        assert isinstance(event, UnrecognizedEvent)
        assert rendezvous.has_pending("mybot-01")
        notifier.send.assert_not_awaited()
