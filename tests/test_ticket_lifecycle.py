"""Tests for ticket channel lifecycle."""

import asyncio

import pytest
import pytest_asyncio

from ticketbridge.core.exceptions import CloseError, RoutingConflict, TicketNotFound
from ticketbridge.models import TicketState
from ticketbridge.services.tickets.lifecycle import BOT_PERMISSIONS, VIEW_CHANNEL, ticket_channel_name


@pytest_asyncio.fixture
async def ready(session):
    await session.connect()
    return session


def test_ticket_channel_name():
    assert ticket_channel_name("Maria Silva", "15551234567") == "📋-maria-silva"
    assert ticket_channel_name("José!!", "15551234567") == "📋-jos"
    assert ticket_channel_name(None, "15551234567") == "📋-15551234567"
    assert ticket_channel_name("😀", "15551234567") == "📋-15551234567"
    assert len(ticket_channel_name("a" * 80, "1")) == len("📋-") + 25


# ==================== Open ====================


@pytest.mark.asyncio
async def test_create_opens_private_channel(tickets, platform, routing, tenant):
    handle = await tickets.create_or_reopen("15551234567@s.whatsapp.net", "Maria")

    assert handle.created is True
    assert handle.reopened is False
    assert handle.conversation_id == "15551234567"
    assert routing.get("15551234567") == handle.channel_id

    channel = platform.channels[handle.channel_id]
    assert channel["category_id"] == tenant.ticket_category_id
    assert channel["name"] == "📋-maria"
    assert channel["topic"] == "WhatsApp: 15551234567"

    overwrites = {p.id: p for p in channel["permissions"]}
    assert overwrites[tenant.workspace_id].deny == VIEW_CHANNEL
    assert overwrites["bot-1"].allow == BOT_PERMISSIONS

    intro = platform.contents(handle.channel_id)[0]
    assert "Maria" in intro
    assert "15551234567" in intro


@pytest.mark.asyncio
async def test_create_is_idempotent_for_live_channel(tickets, platform):
    first = await tickets.create_or_reopen("15551234567", "Maria")
    second = await tickets.create_or_reopen("+1 (555) 123-4567", "Maria")

    assert second.channel_id == first.channel_id
    assert second.created is False
    assert platform.create_calls == 1


@pytest.mark.asyncio
async def test_concurrent_creates_share_one_channel(tickets, platform, routing):
    """Test simultaneous first messages produce exactly one channel."""
    handles = await asyncio.gather(
        *(tickets.create_or_reopen("15551234567", "Maria") for _ in range(3))
    )

    assert {h.channel_id for h in handles} == {handles[0].channel_id}
    assert platform.create_calls == 1
    assert len(routing) == 1


@pytest.mark.asyncio
async def test_externally_deleted_channel_is_recreated(tickets, platform, routing):
    first = await tickets.create_or_reopen("15551234567", "Maria")
    del platform.channels[first.channel_id]

    second = await tickets.create_or_reopen("15551234567")

    assert second.created is True
    assert second.reopened is True
    assert second.channel_id != first.channel_id
    assert routing.get("15551234567") == second.channel_id
    # The stored display name is reused for the new channel
    assert platform.channels[second.channel_id]["name"] == "📋-maria"


@pytest.mark.asyncio
async def test_create_rejects_channel_already_routed(tickets, platform, routing):
    await routing.set("15559876543", "1000")

    with pytest.raises(RoutingConflict):
        await tickets.create_or_reopen("15551234567", "Maria")

    assert routing.get("15551234567") is None
    assert routing.reverse_lookup("1000") == "15559876543"


# ==================== Close ====================


@pytest.mark.asyncio
async def test_close_removes_entry_and_deletes_channel(ready, tickets, platform, routing, transcripts, adapter_factory):
    handle = await tickets.create_or_reopen("15551234567", "Maria")

    await tickets.close("15551234567", closed_by="agent")

    assert routing.get("15551234567") is None
    assert platform.deleted == [handle.channel_id]
    # Transcript ran while the channel still existed
    assert transcripts.calls == [(handle.channel_id, "agent", True)]

    sent = [text for _, text in adapter_factory.current.sent]
    assert len(sent) == 2
    assert "being closed" in sent[0]
    assert "Maria" in sent[1]
    assert tickets.state("15551234567") is TicketState.CLOSED


@pytest.mark.asyncio
async def test_message_after_close_opens_new_channel(ready, tickets, platform):
    first = await tickets.create_or_reopen("15551234567", "Maria")
    await tickets.close("15551234567", closed_by="agent")

    second = await tickets.create_or_reopen("15551234567", "Maria")

    assert second.created is True
    assert second.channel_id != first.channel_id
    assert platform.create_calls == 2


@pytest.mark.asyncio
async def test_failed_delete_keeps_entry(ready, tickets, platform, routing):
    """Test a close that cannot delete the channel can be retried."""
    handle = await tickets.create_or_reopen("15551234567", "Maria")
    platform.fail_delete = True

    with pytest.raises(CloseError):
        await tickets.close("15551234567", closed_by="agent")

    assert routing.get("15551234567") == handle.channel_id
    assert tickets.state("15551234567") is TicketState.OPEN

    platform.fail_delete = False
    await tickets.close("15551234567", closed_by="agent")
    assert routing.get("15551234567") is None


@pytest.mark.asyncio
async def test_close_tolerates_already_deleted_channel(ready, tickets, platform, routing):
    handle = await tickets.create_or_reopen("15551234567", "Maria")
    del platform.channels[handle.channel_id]

    await tickets.close("15551234567", closed_by="agent")

    assert routing.get("15551234567") is None


@pytest.mark.asyncio
async def test_close_unknown_conversation(tickets):
    with pytest.raises(TicketNotFound):
        await tickets.close("15551234567", closed_by="agent")


@pytest.mark.asyncio
async def test_close_respects_toggles(ready, tickets, tenant, transcripts, adapter_factory):
    tenant.settings = tenant.settings.merged(
        {"sendClosingMessage": False, "transcriptsEnabled": False, "feedbackEnabled": False}
    )
    await tickets.create_or_reopen("15551234567", "Maria")

    await tickets.close("15551234567", closed_by="agent")

    assert transcripts.calls == []
    assert adapter_factory.current.sent == []


@pytest.mark.asyncio
async def test_close_without_notification(ready, tickets, adapter_factory):
    await tickets.create_or_reopen("15551234567", "Maria")

    await tickets.close("15551234567", closed_by="agent", send_notification=False)

    sent = [text for _, text in adapter_factory.current.sent]
    assert len(sent) == 1
    assert "being closed" not in sent[0]


@pytest.mark.asyncio
async def test_close_succeeds_when_session_is_down(tickets, routing):
    """Test notifications are best effort when the session is not ready."""
    await tickets.create_or_reopen("15551234567", "Maria")

    await tickets.close("15551234567", closed_by="agent")

    assert routing.get("15551234567") is None


@pytest.mark.asyncio
async def test_slow_transcript_does_not_block_close(ready, tickets, transcripts, routing):
    transcripts.delay = 5.0
    await tickets.create_or_reopen("15551234567", "Maria")

    await tickets.close("15551234567", closed_by="agent")

    assert routing.get("15551234567") is None


@pytest.mark.asyncio
async def test_failing_transcript_does_not_block_close(ready, tickets, transcripts, platform, routing):
    transcripts.error = ValueError("malformed message payload")
    handle = await tickets.create_or_reopen("15551234567", "Maria")

    await tickets.close("15551234567", closed_by="agent")

    assert transcripts.calls == [(handle.channel_id, "agent", True)]
    assert platform.deleted == [handle.channel_id]
    assert routing.get("15551234567") is None


@pytest.mark.asyncio
async def test_second_close_while_closing_is_rejected(ready, tickets, transcripts):
    transcripts.delay = 0.05
    await tickets.create_or_reopen("15551234567", "Maria")

    first = asyncio.create_task(tickets.close("15551234567", closed_by="agent"))
    await asyncio.sleep(0)
    assert tickets.state("15551234567") is TicketState.CLOSING

    with pytest.raises(CloseError):
        await tickets.close("15551234567", closed_by="other")
    await first


@pytest.mark.asyncio
async def test_open_during_close_waits_for_close(ready, tickets, transcripts, platform):
    """Test a message arriving mid-close gets a fresh channel, not the dying one."""
    transcripts.delay = 0.05
    first = await tickets.create_or_reopen("15551234567", "Maria")

    closing = asyncio.create_task(tickets.close("15551234567", closed_by="agent"))
    await asyncio.sleep(0)
    handle = await tickets.create_or_reopen("15551234567", "Maria")
    await closing

    assert handle.created is True
    assert handle.channel_id != first.channel_id
    assert handle.channel_id in platform.channels


@pytest.mark.asyncio
async def test_close_channel_by_channel_id(ready, tickets, routing):
    handle = await tickets.create_or_reopen("15551234567", "Maria")

    conversation_id = await tickets.close_channel(handle.channel_id, closed_by="agent")

    assert conversation_id == "15551234567"
    assert routing.get("15551234567") is None

    with pytest.raises(TicketNotFound):
        await tickets.close_channel("unknown", closed_by="agent")


# ==================== Rename ====================


@pytest.mark.asyncio
async def test_rename_updates_channel_and_entry(tickets, platform, routing):
    handle = await tickets.create_or_reopen("15551234567", "Maria")

    renamed = await tickets.rename("15551234567@s.whatsapp.net", "Maria Silva")

    assert renamed.channel_id == handle.channel_id
    assert platform.renamed == [(handle.channel_id, "📋-maria-silva")]
    assert routing.entry("15551234567").display_name == "Maria Silva"


@pytest.mark.asyncio
async def test_rename_without_open_ticket(tickets, platform):
    assert await tickets.rename("15551234567", "Maria") is None
    assert platform.renamed == []


@pytest.mark.asyncio
async def test_rename_of_deleted_channel_is_used_on_reopen(tickets, platform, routing):
    first = await tickets.create_or_reopen("15551234567", "Maria")
    del platform.channels[first.channel_id]

    await tickets.rename("15551234567", "Maria Silva")
    second = await tickets.create_or_reopen("15551234567")

    assert routing.entry("15551234567").display_name == "Maria Silva"
    assert platform.channels[second.channel_id]["name"] == "📋-maria-silva"


@pytest.mark.asyncio
async def test_rename_during_close_leaves_channel_alone(ready, tickets, transcripts, platform):
    transcripts.delay = 0.05
    await tickets.create_or_reopen("15551234567", "Maria")

    closing = asyncio.create_task(tickets.close("15551234567", closed_by="agent"))
    await asyncio.sleep(0)

    assert await tickets.rename("15551234567", "Maria Silva") is None
    await closing
    assert platform.renamed == []
