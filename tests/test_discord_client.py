"""Tests for the Discord REST client."""

import json
from urllib.parse import unquote

import httpx
import pytest

from ticketbridge.core.exceptions import ChannelNotFound, PlatformError
from ticketbridge.models import MediaAttachment, PermissionOverwrite
from ticketbridge.services.platform.discord import DiscordClient, split_content
from ticketbridge.services.platform.transcripts import PlainTextTranscriptService, render_transcript


def make_client(handler) -> DiscordClient:
    http_client = httpx.AsyncClient(base_url="http://discord/api/v10", transport=httpx.MockTransport(handler))
    return DiscordClient("guild-1", token="token", http_client=http_client)


def message_payload(message_id: int, content: str = "hi") -> dict:
    return {
        "id": str(message_id),
        "content": content,
        "timestamp": "2024-01-01T12:00:00+00:00",
        "author": {"id": "u1", "username": "agent", "global_name": "Agent"},
        "attachments": [],
    }


def test_split_content_prefers_line_breaks():
    text = ("a" * 1500 + "\n") * 3

    chunks = split_content(text)

    assert all(len(chunk) <= 2000 for chunk in chunks)
    assert "".join(chunks).replace("\n", "") == "a" * 4500
    assert split_content("short") == ["short"]


# ==================== Channels ====================


@pytest.mark.asyncio
async def test_create_channel():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(201, json={"id": "900", "name": "ticket"})

    client = make_client(handler)

    channel_id = await client.create_channel(
        "category-1",
        "📋-maria",
        [PermissionOverwrite(id="guild-1", type=0, deny=1024)],
        topic="WhatsApp: 15551234567",
    )

    assert channel_id == "900"
    assert requests[0].url.path == "/api/v10/guilds/guild-1/channels"
    body = json.loads(requests[0].content)
    assert body["parent_id"] == "category-1"
    assert body["type"] == 0
    assert body["topic"] == "WhatsApp: 15551234567"
    assert body["permission_overwrites"] == [{"id": "guild-1", "type": 0, "allow": "0", "deny": "1024"}]


@pytest.mark.asyncio
async def test_delete_channel_sends_audit_reason():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": "900"})

    client = make_client(handler)
    await client.delete_channel("900", reason="Ticket closed by Agent Smith")

    assert requests[0].method == "DELETE"
    assert unquote(requests[0].headers["X-Audit-Log-Reason"]) == "Ticket closed by Agent Smith"


@pytest.mark.asyncio
async def test_delete_missing_channel_raises_not_found():
    client = make_client(lambda request: httpx.Response(404, json={"code": 10003}))

    with pytest.raises(ChannelNotFound):
        await client.delete_channel("900", reason="closed")


@pytest.mark.asyncio
async def test_delete_without_permission_raises_platform_error():
    client = make_client(lambda request: httpx.Response(403, json={"code": 50013}))

    with pytest.raises(PlatformError) as exc_info:
        await client.delete_channel("900", reason="closed")
    assert not isinstance(exc_info.value, ChannelNotFound)
    assert exc_info.value.status == 403


@pytest.mark.asyncio
async def test_rename_channel_patches_name():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": "900", "name": "📋-maria-silva"})

    client = make_client(handler)
    await client.rename_channel("900", "📋-maria-silva", reason="Contact renamed")

    assert requests[0].method == "PATCH"
    assert requests[0].url.path == "/api/v10/channels/900"
    assert json.loads(requests[0].content) == {"name": "📋-maria-silva"}
    assert unquote(requests[0].headers["X-Audit-Log-Reason"]) == "Contact renamed"


@pytest.mark.asyncio
async def test_rename_missing_channel_raises_not_found():
    client = make_client(lambda request: httpx.Response(404, json={"code": 10003}))

    with pytest.raises(ChannelNotFound):
        await client.rename_channel("900", "📋-maria", reason="Contact renamed")


@pytest.mark.asyncio
async def test_fetch_channel():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/900"):
            return httpx.Response(200, json={"id": "900"})
        return httpx.Response(404, json={"code": 10003})

    client = make_client(handler)

    assert await client.fetch_channel("900") is True
    assert await client.fetch_channel("901") is False


@pytest.mark.asyncio
async def test_rate_limit_is_retried():
    responses = [httpx.Response(429, json={"retry_after": 0.1}), httpx.Response(200, json={"id": "900"})]
    client = make_client(lambda request: responses.pop(0))

    assert await client.fetch_channel("900") is True
    assert responses == []


# ==================== Messages ====================


@pytest.mark.asyncio
async def test_send_long_message_in_chunks():
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"id": str(len(bodies))})

    client = make_client(handler)
    message_id = await client.send_message("900", "x" * 4500)

    assert [len(b["content"]) for b in bodies] == [2000, 2000, 500]
    assert message_id == "3"


@pytest.mark.asyncio
async def test_send_message_with_files_uses_multipart():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"id": "m1"})

    client = make_client(handler)
    await client.send_message(
        "900",
        "**Maria:** look",
        [MediaAttachment(filename="photo.png", content_type="image/png", data=b"PNGDATA")],
    )

    request = requests[0]
    assert request.headers["content-type"].startswith("multipart/form-data")
    body = request.content
    assert b'name="payload_json"' in body
    assert b'name="files[0]"; filename="photo.png"' in body
    assert b"PNGDATA" in body


@pytest.mark.asyncio
async def test_fetch_messages_pages_backwards():
    seen_params = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_params.append(dict(request.url.params))
        if "before" not in request.url.params:
            return httpx.Response(200, json=[message_payload(i) for i in range(120, 20, -1)])
        return httpx.Response(200, json=[message_payload(i) for i in range(20, 0, -1)])

    client = make_client(handler)
    messages = await client.fetch_messages("900")

    assert len(messages) == 120
    assert messages[0].id == "1"
    assert messages[-1].id == "120"
    assert messages[0].author_name == "Agent"
    assert seen_params[1]["before"] == "21"


# ==================== Transcripts ====================


def test_render_transcript():
    messages = [DiscordClient._parse_message(message_payload(i, text)) for i, text in ((1, "hello"), (2, "bye"))]

    text = render_transcript("900", messages, "Agent Smith")

    assert "Closed by Agent Smith" in text
    assert "[2024-01-01 12:00:00] Agent: hello" in text
    assert text.index("hello") < text.index("bye")


@pytest.mark.asyncio
async def test_transcript_uploaded_to_transcript_channel(tenant):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.method == "GET":
            return httpx.Response(200, json=[message_payload(1, "hello")])
        return httpx.Response(200, json={"id": "t1"})

    service = PlainTextTranscriptService(make_client(handler), tenant)
    await service.generate("900", "Agent Smith")

    upload = requests[-1]
    assert upload.url.path == f"/api/v10/channels/{tenant.transcript_channel_id}/messages"
    assert b"transcript-900.txt" in upload.content


@pytest.mark.asyncio
async def test_transcript_failure_is_not_raised(tenant):
    service = PlainTextTranscriptService(make_client(lambda request: httpx.Response(403, json={})), tenant)

    await service.generate("900", "Agent Smith")


@pytest.mark.asyncio
async def test_transcript_skipped_without_channel(tenant):
    tenant.transcript_channel_id = None
    requests = []
    service = PlainTextTranscriptService(make_client(lambda request: requests.append(request)), tenant)

    await service.generate("900", "Agent Smith")

    assert requests == []


# ==================== Attachments ====================


@pytest.mark.asyncio
async def test_download_attachment_from_cdn_without_token():
    api_requests = []
    cdn_requests = []

    def api_handler(request: httpx.Request) -> httpx.Response:
        api_requests.append(request)
        return httpx.Response(200)

    def cdn_handler(request: httpx.Request) -> httpx.Response:
        cdn_requests.append(request)
        return httpx.Response(200, content=b"%PDF")

    client = DiscordClient(
        "guild-1",
        token="token",
        http_client=httpx.AsyncClient(
            base_url="http://discord/api/v10",
            headers={"Authorization": "Bot token"},
            transport=httpx.MockTransport(api_handler),
        ),
        cdn_client=httpx.AsyncClient(transport=httpx.MockTransport(cdn_handler)),
    )

    data = await client.download_attachment("https://cdn.discordapp.com/attachments/900/1/guide.pdf")

    assert data == b"%PDF"
    assert api_requests == []
    assert cdn_requests[0].url.host == "cdn.discordapp.com"
    assert "Authorization" not in cdn_requests[0].headers


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "url",
    [
        "https://attacker.example.com/guide.pdf",
        "http://cdn.discordapp.com/attachments/900/1/guide.pdf",
        "https://cdn.discordapp.com.attacker.example.com/guide.pdf",
        "/channels/900/messages",
    ],
)
async def test_download_attachment_rejects_foreign_urls(url):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, content=b"secret")

    client = DiscordClient(
        "guild-1",
        token="token",
        http_client=httpx.AsyncClient(base_url="http://discord/api/v10", transport=httpx.MockTransport(handler)),
        cdn_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )

    with pytest.raises(PlatformError):
        await client.download_attachment(url)
    assert requests == []
