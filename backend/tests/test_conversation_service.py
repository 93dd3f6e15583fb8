import asyncio

import pytest

from app.conversation.service import ConversationService
from app.credentials.rotation import CredentialRotationPolicy
from app.errors import RateLimitError
from app.live.events import (
    AudioReceived,
    GoAway,
    InputTranscript,
    Interrupted,
    LinkClosed,
    LinkError,
    OutputTranscript,
    ResumptionUpdated,
    SetupComplete,
    TurnComplete,
)
from app.schemas import StartInterviewRequest
from app.services.interview_store import InterviewStore
from conftest import FakeGrader, FakeLink, RecordingDispatcher
from core.state import LinkErrorKind

DEV_KEY = "dev-key-12345678"


def _service(tmp_path, grader=None, mode="DEV", max_attempts=3):
    store = InterviewStore(tmp_path / "interview_store.json")
    dispatcher = RecordingDispatcher()
    rotation = CredentialRotationPolicy(mode=mode, models=["flash"], pool=[], default_credential=DEV_KEY)
    service = ConversationService(
        store,
        grader or FakeGrader(),
        dispatcher,
        rotation,
        link_factory=FakeLink,
        live_model="live-model",
        max_reconnect_attempts=max_attempts,
    )
    return service, store, dispatcher


async def _start(service, client_id="c1", **overrides):
    request = StartInterviewRequest(candidate_name="Ana", position="Backend Developer", **overrides)
    state = await service.start_conversation(client_id, request)
    link = state.active_link
    await link.emit(SetupComplete())
    return state, link


async def _start_resumable(service, client_id="c1"):
    state, link = await _start(service, client_id)
    await link.emit(ResumptionUpdated(handle="h-1", resumable=True))
    return state, link


@pytest.mark.asyncio
async def test_new_session_connects_and_greets_in_english(tmp_path, fake_links):
    service, store, dispatcher = _service(tmp_path)
    state, link = await _start(service)

    assert link.opened_with == [None]
    assert link.credential == DEV_KEY
    assert link.system_instruction and "Backend Developer" in link.system_instruction
    assert link.sent_text == ["Hello!"]
    assert dispatcher.statuses() == ["CONNECTED"]
    assert store.get_session(state.conversation_id)["position"] == "Backend Developer"


@pytest.mark.asyncio
async def test_bulgarian_session_greets_in_bulgarian(tmp_path, fake_links):
    service, _, _ = _service(tmp_path)
    _, link = await _start(service, language="bg")

    assert link.sent_text == ["Здравейте!"]


@pytest.mark.asyncio
async def test_prod_mode_without_key_requires_api_key(tmp_path, fake_links):
    service, _, dispatcher = _service(tmp_path, mode="PROD")

    state = await service.start_conversation("c1", StartInterviewRequest(position="QA Engineer"))

    assert state is None
    assert fake_links == []
    assert len(service.registry) == 0
    assert dispatcher.topics("error")[0]["requiresApiKey"] is True


@pytest.mark.asyncio
async def test_transcripts_and_audio_are_relayed(tmp_path, fake_links):
    service, _, dispatcher = _service(tmp_path)
    state, link = await _start(service)

    await link.emit(AudioReceived(data=b"\x00\x01"))
    await link.emit(InputTranscript(text="I build APIs."))
    await link.emit(OutputTranscript(text="Tell me more."))

    assert dispatcher.topics("audio") == [{"data": "AAE="}]
    assert dispatcher.topics("transcript") == [
        {"speaker": "user", "text": "I build APIs."},
        {"speaker": "ai", "text": "Tell me more."},
    ]
    assert state.transcript.line_count == 2


@pytest.mark.asyncio
async def test_buffered_audio_is_replayed_in_order_after_resume(tmp_path, fake_links):
    service, _, dispatcher = _service(tmp_path)
    state, old_link = await _start_resumable(service)

    await service.send_audio("c1", b"live")
    assert old_link.sent_audio == [b"live"]

    await old_link.emit(GoAway(time_left="5s"))
    new_link = state.active_link
    assert new_link is not old_link
    assert old_link.closed is True
    assert new_link.opened_with == ["h-1"]
    assert state.reconnecting is True

    for chunk in (b"a", b"b", b"c"):
        await service.send_audio("c1", chunk)
    assert new_link.sent_audio == []
    assert state.audio_replay_buffer == [b"a", b"b", b"c"]

    await new_link.emit(SetupComplete())
    await service.send_audio("c1", b"d")

    assert new_link.sent_audio == [b"a", b"b", b"c", b"d"]
    assert state.reconnecting is False
    assert state.audio_replay_buffer == []
    assert new_link.sent_text == []
    assert dispatcher.statuses()[-1] == "RESUMED"


@pytest.mark.asyncio
async def test_go_away_then_close_creates_exactly_one_replacement(tmp_path, fake_links):
    service, _, _ = _service(tmp_path)
    state, old_link = await _start_resumable(service)

    await old_link.emit(GoAway(time_left="10s"))
    await old_link.emit(GoAway(time_left="1s"))
    await old_link.emit(LinkClosed(code=1000, reason="going away", expected=False, error_kind=LinkErrorKind.TRANSPORT))

    assert len(fake_links) == 2
    assert state.active_link is fake_links[1]


@pytest.mark.asyncio
async def test_second_go_away_on_replacement_while_reconnecting_is_ignored(tmp_path, fake_links):
    service, _, _ = _service(tmp_path)
    state, old_link = await _start_resumable(service)

    await old_link.emit(GoAway(time_left="10s"))
    await state.active_link.emit(GoAway(time_left="9s"))

    assert len(fake_links) == 2


@pytest.mark.asyncio
async def test_unexpected_close_without_token_is_terminal(tmp_path, fake_links):
    service, _, dispatcher = _service(tmp_path)
    state, link = await _start(service)

    await link.emit(LinkClosed(code=1006, reason="", expected=False, error_kind=LinkErrorKind.TRANSPORT))

    assert len(fake_links) == 1
    assert state.reconnecting is False
    assert state.ended is False
    last = dispatcher.topics("status")[-1]
    assert last["status"] == "DISCONNECTED"
    assert "no resumption token" in last["message"]


@pytest.mark.asyncio
async def test_invalid_credential_is_flagged_and_never_reconnects(tmp_path, fake_links):
    service, _, dispatcher = _service(tmp_path)
    state, link = await _start_resumable(service)

    await link.emit(LinkError(kind=LinkErrorKind.INVALID_CREDENTIAL, message="API key not valid"))
    await link.emit(
        LinkClosed(code=1008, reason="API key not valid", expected=False, error_kind=LinkErrorKind.INVALID_CREDENTIAL)
    )

    assert len(fake_links) == 1
    assert dispatcher.topics("error")[0]["invalidKey"] is True
    assert dispatcher.statuses()[-1] == "DISCONNECTED"
    assert state.reconnecting is False


@pytest.mark.asyncio
async def test_rate_limited_close_flags_rotation_without_reconnecting(tmp_path, fake_links):
    service, _, dispatcher = _service(tmp_path)
    _, link = await _start_resumable(service)

    await link.emit(LinkError(kind=LinkErrorKind.RATE_LIMITED, message="RESOURCE_EXHAUSTED"))
    await link.emit(
        LinkClosed(code=1011, reason="RESOURCE_EXHAUSTED", expected=False, error_kind=LinkErrorKind.RATE_LIMITED)
    )

    assert len(fake_links) == 1
    assert dispatcher.topics("error")[0]["rateLimited"] is True
    assert service.rotation.is_exhausted(DEV_KEY, "live-model") is True


@pytest.mark.asyncio
async def test_failed_replacements_drop_buffer_and_stop_after_budget(tmp_path, fake_links):
    service, _, dispatcher = _service(tmp_path, max_attempts=3)
    state, link = await _start_resumable(service)

    await link.emit(LinkClosed(code=1006, expected=False, error_kind=LinkErrorKind.TRANSPORT))
    assert len(fake_links) == 2

    await service.send_audio("c1", b"lost")
    assert state.audio_replay_buffer == [b"lost"]

    for attempt in range(3):
        await state.active_link.emit(LinkClosed(code=1006, expected=False, error_kind=LinkErrorKind.TRANSPORT))
        assert state.audio_replay_buffer == []

    assert len(fake_links) == 4
    assert fake_links[3].opened_with == ["h-1"]
    assert state.reconnecting is False
    assert state.reconnect_failures == 3
    assert dispatcher.statuses()[-1] == "DISCONNECTED"


@pytest.mark.asyncio
async def test_finalization_is_idempotent(tmp_path, fake_links):
    grader = FakeGrader()
    service, store, dispatcher = _service(tmp_path, grader=grader)
    state, link = await _start(service)
    await link.emit(OutputTranscript(text="Tell me about yourself."))

    results = await asyncio.gather(service.end_conversation("c1"), service.end_conversation("c1"))
    await service.finalization.drain()

    assert sorted(results) == [False, True]
    assert await service.finalization.finalize(state, reason="again") is False
    assert link.closed is True
    assert grader.calls == [(state.conversation_id, DEV_KEY)]
    assert dispatcher.statuses().count("GRADING") == 1
    assert dispatcher.topics("report") == [grader.result]
    assert service.registry.get("c1") is None

    record = store.get_session(state.conversation_id)
    assert record["ended_at"] is not None
    assert "[Interviewer]: Tell me about yourself." in record["transcript"]


@pytest.mark.asyncio
async def test_repeated_conclusion_phrase_finalizes_once(tmp_path, fake_links):
    grader = FakeGrader()
    service, _, dispatcher = _service(tmp_path, grader=grader)
    _, link = await _start(service)

    for _ in range(2):
        await link.emit(OutputTranscript(text="Thank you for your time today."))
        await link.emit(TurnComplete())
    await service.finalization.drain()

    assert len(grader.calls) == 1
    assert dispatcher.statuses().count("GRADING") == 1
    assert dispatcher.statuses().count("TURN_COMPLETE") == 1


@pytest.mark.asyncio
async def test_interrupted_turn_is_not_checked_for_conclusion(tmp_path, fake_links):
    grader = FakeGrader()
    service, _, dispatcher = _service(tmp_path, grader=grader)
    state, link = await _start(service)

    await link.emit(OutputTranscript(text="Thank you for your time"))
    await link.emit(Interrupted())
    await link.emit(TurnComplete())

    assert state.ended is False
    assert grader.calls == []
    assert "INTERRUPTED" in dispatcher.statuses()


@pytest.mark.asyncio
async def test_rate_limited_grading_is_distinguishable(tmp_path, fake_links):
    service, _, dispatcher = _service(tmp_path, grader=FakeGrader(error=RateLimitError("exhausted")))
    await _start(service)

    await service.end_conversation("c1")
    await service.finalization.drain()

    errors = dispatcher.topics("error")
    assert errors[-1]["rateLimited"] is True
    assert dispatcher.topics("report") == []


@pytest.mark.asyncio
async def test_other_grading_failure_is_generic_error(tmp_path, fake_links):
    service, _, dispatcher = _service(tmp_path, grader=FakeGrader(error=RuntimeError("boom")))
    state, _ = await _start(service)

    await service.end_conversation("c1")
    await service.finalization.drain()

    errors = dispatcher.topics("error")
    assert "rateLimited" not in errors[-1]
    assert state.ended is True


@pytest.mark.asyncio
async def test_persistence_failure_skips_grading(tmp_path, fake_links, monkeypatch):
    grader = FakeGrader()
    service, store, dispatcher = _service(tmp_path, grader=grader)
    state, _ = await _start(service)

    def _fail(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(store, "append_transcript", _fail)
    await service.end_conversation("c1")
    await service.finalization.drain()

    assert grader.calls == []
    assert "GRADING" not in dispatcher.statuses()
    assert dispatcher.topics("error")
    assert state.ended is True


@pytest.mark.asyncio
async def test_client_disconnect_tears_down_without_grading(tmp_path, fake_links):
    grader = FakeGrader()
    service, _, _ = _service(tmp_path, grader=grader)
    state, link = await _start(service)

    await service.handle_disconnect("c1")
    await link.emit(TurnComplete())
    await service.send_audio("c1", b"late")

    assert link.closed is True
    assert service.registry.get("c1") is None
    assert grader.calls == []
    assert link.sent_audio == []
    assert state.ended is True


@pytest.mark.asyncio
async def test_mic_off_sends_stream_end(tmp_path, fake_links):
    service, _, _ = _service(tmp_path)
    _, link = await _start(service)

    await service.send_audio_stream_end("c1")

    assert link.stream_ends == 1


@pytest.mark.asyncio
async def test_session_store_failure_at_start_reaches_client(tmp_path, fake_links, monkeypatch):
    service, store, dispatcher = _service(tmp_path)

    def _fail(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(store, "create_session", _fail)
    state = await service.start_conversation("c1", StartInterviewRequest(position="QA Engineer"))

    assert state is None
    assert fake_links == []
    assert len(service.registry) == 0
    assert dispatcher.topics("error") == [{"message": "Failed to start interview. Please try again."}]


@pytest.mark.asyncio
async def test_failed_first_connect_can_be_restarted(tmp_path, fake_links):
    grader = FakeGrader()
    service, store, dispatcher = _service(tmp_path, grader=grader)
    request = StartInterviewRequest(candidate_name="Ana", position="Backend Developer")

    first = await service.start_conversation("c1", request)
    await first.active_link.emit(LinkError(kind=LinkErrorKind.TRANSPORT, message="connection refused"))
    await first.active_link.emit(
        LinkClosed(code=None, reason="connection refused", expected=False, error_kind=LinkErrorKind.TRANSPORT)
    )
    assert dispatcher.statuses() == ["DISCONNECTED"]
    assert first.disconnected is True

    second = await service.start_conversation("c1", request)
    await second.active_link.emit(SetupComplete())

    assert second is not None
    assert second.conversation_id != first.conversation_id
    assert first.ended is True
    assert fake_links[0].closed is True
    assert service.registry.get("c1") is second
    assert list(service._link_owners) == [second.active_link.link_id]
    assert dispatcher.statuses() == ["DISCONNECTED", "CONNECTED"]
    assert len(dispatcher.topics("error")) == 1
    assert grader.calls == []
    assert store.get_session(first.conversation_id)["ended_at"] is None


@pytest.mark.asyncio
async def test_ending_before_the_interview_starts_skips_grading(tmp_path, fake_links):
    grader = FakeGrader()
    service, store, dispatcher = _service(tmp_path, grader=grader)

    state = await service.start_conversation("c1", StartInterviewRequest(position="QA Engineer"))
    assert await service.end_conversation("c1") is False
    await service.finalization.drain()

    assert grader.calls == []
    assert "GRADING" not in dispatcher.statuses()
    assert dispatcher.statuses()[-1] == "DISCONNECTED"
    assert service.registry.get("c1") is None
    assert state.ended is True
    assert fake_links[0].closed is True


@pytest.mark.asyncio
async def test_live_session_is_not_replaced_by_a_second_start(tmp_path, fake_links):
    service, _, dispatcher = _service(tmp_path)
    state, _ = await _start(service)

    again = await service.start_conversation("c1", StartInterviewRequest(position="QA Engineer"))

    assert again is None
    assert service.registry.get("c1") is state
    assert "already in progress" in dispatcher.topics("error")[-1]["message"]
