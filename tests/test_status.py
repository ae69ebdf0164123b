import pytest

from conftest import FakeGateway
from everythingbot.agent.status import StatusReporter
from everythingbot.models import Session


@pytest.fixture
def reporter(gateway: FakeGateway) -> StatusReporter:
    return StatusReporter(gateway, "Processing...")


@pytest.mark.asyncio
async def test_start_replies_to_request(reporter: StatusReporter, gateway: FakeGateway) -> None:
    handle = await reporter.start(Session(chat_id="c", query="q", request_message_id=9))
    assert handle.ref is not None
    assert gateway.sent == [
        {"chat_id": "c", "text": "Processing...", "reply_to": 9, "parse_mode": "Markdown"}
    ]


@pytest.mark.asyncio
async def test_update_edits_in_place(reporter: StatusReporter, gateway: FakeGateway) -> None:
    handle = await reporter.start(Session(chat_id="c", query="q"))
    await reporter.update(handle, "Searching...")
    await reporter.update(handle, "Calculating...")
    assert [e["text"] for e in gateway.edits] == ["Searching...", "Calculating..."]
    assert {e["message_id"] for e in gateway.edits} == {handle.ref.message_id}


@pytest.mark.asyncio
async def test_release_is_idempotent(reporter: StatusReporter, gateway: FakeGateway) -> None:
    handle = await reporter.start(Session(chat_id="c", query="q"))
    await reporter.release(handle)
    await reporter.release(handle)
    await reporter.update(handle, "too late")
    assert len(gateway.deleted) == 1
    assert gateway.edits == []
    assert await reporter.finalize(handle, "done") is None


@pytest.mark.asyncio
async def test_failed_start_makes_later_calls_noops(
    reporter: StatusReporter, gateway: FakeGateway
) -> None:
    """A status message that could not be sent never blocks the session."""
    gateway.failing_sends = {0}
    handle = await reporter.start(Session(chat_id="c", query="q"))
    assert handle.ref is None
    await reporter.update(handle, "Searching...")
    assert await reporter.finalize(handle, "done") is None
    await reporter.release(handle)
    assert gateway.edits == []
    assert gateway.deleted == []


@pytest.mark.asyncio
async def test_delete_failure_is_swallowed(reporter: StatusReporter, gateway: FakeGateway) -> None:
    gateway.delete_fails = True
    handle = await reporter.start(Session(chat_id="c", query="q"))
    await reporter.release(handle)
    assert handle.released is True


@pytest.mark.asyncio
async def test_finalize_edits_once(reporter: StatusReporter, gateway: FakeGateway) -> None:
    handle = await reporter.start(Session(chat_id="c", query="q"))
    ref = await reporter.finalize(handle, "Cancelled.")
    assert ref is not None and ref.text == "Cancelled."
    assert await reporter.finalize(handle, "again") is None
    assert [e["text"] for e in gateway.edits] == ["Cancelled."]
