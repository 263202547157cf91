import asyncio

from apps.pipeline.dispatch import ended_reply
from apps.pipeline.timeline import Role
from apps.pipeline.tools import END_CALL
from conftest import FakeGenerator, FakeSynthesizer, FakeTranscriber, make_coordinator, tool_call


def _assert_turn_structure(timeline):
    for prev, cur in zip(timeline, timeline[1:]):
        assert not (prev.role is Role.ASSISTANT and cur.role is Role.ASSISTANT)
    for i, msg in enumerate(timeline):
        if msg.role is Role.ASSISTANT:
            trigger = timeline[i - 1]
            assert trigger.role is Role.USER
            assert msg.content == f"reply to: {trigger.content}"


def test_utterance_commits_reply_and_plays_it():
    async def run():
        coordinator, playback = make_coordinator()

        user = coordinator.on_utterance_finalized("My kitchen is on fire")
        assert coordinator.session.pending_generation_token == user.id
        await coordinator.wait_idle()

        timeline = coordinator.session.timeline
        assert [m.role for m in timeline] == [Role.USER, Role.ASSISTANT]
        assert timeline[1].content == "reply to: My kitchen is on fire"
        assert timeline[1].audio == b"WAV:reply to: My kitchen is on fire"
        assert playback.played == [timeline[1].audio]
        assert coordinator.session.is_active

    asyncio.run(run())


def test_superseded_attempt_is_dropped():
    async def run():
        generator = FakeGenerator()
        u1_gate = generator.hold("There's a fire")
        coordinator, playback = make_coordinator(generator=generator)

        coordinator.on_utterance_finalized("There's a fire")
        await asyncio.sleep(0)
        assert coordinator.in_flight == 1

        coordinator.on_utterance_finalized("at Main and 5th")
        u1_gate.set()
        await coordinator.wait_idle()

        timeline = coordinator.session.timeline
        assert [m.content for m in timeline] == [
            "There's a fire",
            "at Main and 5th",
            "reply to: at Main and 5th",
        ]
        assert len(playback.played) == 1
        assert len(generator.calls) == 2

    asyncio.run(run())


def test_stale_after_synthesis_never_plays():
    async def run():
        synthesizer = FakeSynthesizer()
        gate = synthesizer.hold("reply to: first")
        coordinator, playback = make_coordinator(synthesizer=synthesizer)

        coordinator.on_utterance_finalized("first")
        for _ in range(3):
            await asyncio.sleep(0)
        assert synthesizer.calls == ["reply to: first"]

        coordinator.on_utterance_finalized("second")
        gate.set()
        await coordinator.wait_idle()

        assert [m.content for m in coordinator.session.timeline] == ["first", "second", "reply to: second"]
        assert playback.played == [b"WAV:reply to: second"]

    asyncio.run(run())


def test_stale_after_blob_read_never_commits():
    async def run():
        synthesizer = FakeSynthesizer()
        read_gate = synthesizer.hold_read("reply to: first")
        coordinator, playback = make_coordinator(synthesizer=synthesizer)

        coordinator.on_utterance_finalized("first")
        for _ in range(3):
            await asyncio.sleep(0)

        coordinator.on_speech_start()
        read_gate.set()
        await coordinator.wait_idle()

        assert [m.content for m in coordinator.session.timeline] == ["first"]
        assert playback.played == []

    asyncio.run(run())


def test_barge_in_pauses_playback_without_cancelling_attempt():
    async def run():
        generator = FakeGenerator()
        gate = generator.hold("where are you")
        coordinator, playback = make_coordinator(generator=generator)
        playback.is_playing = True

        coordinator.on_utterance_finalized("where are you")
        await asyncio.sleep(0)

        coordinator.on_speech_start()
        assert playback.is_playing is False
        assert playback.pauses == 1
        assert coordinator.in_flight == 1

        gate.set()
        await coordinator.wait_idle()
        # the caller was still talking, so the reply was dropped
        assert [m.role for m in coordinator.session.timeline] == [Role.USER]

        await coordinator.on_speech_end(b"I'm at the library")
        await coordinator.wait_idle()
        assert [m.content for m in coordinator.session.timeline] == [
            "where are you",
            "I'm at the library",
            "reply to: I'm at the library",
        ]

    asyncio.run(run())


def test_failed_transcription_appends_nothing():
    async def run():
        generator = FakeGenerator()
        coordinator, playback = make_coordinator(generator=generator, transcriber=FakeTranscriber(fail=True))

        coordinator.on_speech_start()
        result = await coordinator.on_speech_end(b"noise")
        await coordinator.wait_idle()

        assert result is None
        assert coordinator.session.timeline == []
        assert generator.calls == []
        assert not coordinator.caller_speaking

    asyncio.run(run())


def test_empty_transcript_resumes_pending_turn():
    async def run():
        generator = FakeGenerator()
        gate = generator.hold("help me")
        coordinator, playback = make_coordinator(
            generator=generator, transcriber=FakeTranscriber({b"cough": ""}),
        )

        coordinator.on_utterance_finalized("help me")
        await asyncio.sleep(0)
        coordinator.on_speech_start()
        gate.set()
        await coordinator.wait_idle()
        assert len(coordinator.session.timeline) == 1

        await coordinator.on_speech_end(b"cough")
        await coordinator.wait_idle()

        assert [m.content for m in coordinator.session.timeline] == ["help me", "reply to: help me"]

    asyncio.run(run())


def test_utterances_append_in_speech_order():
    async def run():
        transcriber = FakeTranscriber({b"a1": "first", b"a2": "second"})
        gate = transcriber.hold(b"a1")
        coordinator, playback = make_coordinator(transcriber=transcriber)

        coordinator.on_speech_start()
        t1 = asyncio.create_task(coordinator.on_speech_end(b"a1"))
        await asyncio.sleep(0)
        coordinator.on_speech_start()
        t2 = asyncio.create_task(coordinator.on_speech_end(b"a2"))
        for _ in range(3):
            await asyncio.sleep(0)
        assert coordinator.session.timeline == []

        gate.set()
        await asyncio.gather(t1, t2)
        await coordinator.wait_idle()

        timeline = coordinator.session.timeline
        users = [m.content for m in timeline if m.role is Role.USER]
        assert users == ["first", "second"]
        assert timeline[-1].content == "reply to: second"
        _assert_turn_structure(timeline)

    asyncio.run(run())


def test_end_call_then_terminal_response():
    async def run():
        generator = FakeGenerator(script=[tool_call(END_CALL, reason="help dispatched")])
        coordinator, playback = make_coordinator(generator=generator)

        coordinator.on_utterance_finalized("The officers are here now")
        await coordinator.wait_idle()

        session = coordinator.session
        assert session.has_ended
        assert session.end_reason == "help dispatched"
        assert session.timeline[-1].content == ended_reply("help dispatched")

        before = len(session.timeline)
        terminal = coordinator.on_utterance_finalized("Hello? Are you still there?")
        await coordinator.wait_idle()

        assert terminal.content == session.terminal_message()
        assert terminal.is_system_notification
        assert len(session.timeline) == before
        assert len(generator.calls) == 1
        assert session.model_history()[-1]["content"] == ended_reply("help dispatched")

    asyncio.run(run())


def test_tts_failure_commits_text_without_audio():
    async def run():
        coordinator, playback = make_coordinator(synthesizer=FakeSynthesizer(fail=True))

        coordinator.on_utterance_finalized("Someone broke in")
        await coordinator.wait_idle()

        reply = coordinator.session.timeline[-1]
        assert reply.role is Role.ASSISTANT
        assert reply.content == "reply to: Someone broke in"
        assert reply.audio == b""
        assert playback.played == []

    asyncio.run(run())


def test_rapid_interleavings_never_commit_stale_replies():
    async def run():
        generator = FakeGenerator()
        coordinator, playback = make_coordinator(generator=generator)
        pattern = [0, 2, 1, 5, 0, 3, 0, 0, 4, 1]

        for i, pause in enumerate(pattern):
            coordinator.on_utterance_finalized(f"utterance {i}")
            for _ in range(pause):
                await asyncio.sleep(0)
        await coordinator.wait_idle()

        timeline = coordinator.session.timeline
        _assert_turn_structure(timeline)
        assert timeline[-1].content == f"reply to: utterance {len(pattern) - 1}"

    asyncio.run(run())


def test_reset_makes_in_flight_attempt_stale():
    async def run():
        generator = FakeGenerator()
        gate = generator.hold("fire")
        coordinator, playback = make_coordinator(generator=generator)

        coordinator.on_utterance_finalized("fire")
        await asyncio.sleep(0)
        coordinator.reset()
        gate.set()
        await coordinator.wait_idle()

        assert coordinator.session.timeline == []
        assert playback.played == []

    asyncio.run(run())


def test_earlier_reply_waits_while_next_utterance_is_transcribing():
    async def run():
        generator = FakeGenerator()
        u1_gate = generator.hold("U1")
        transcriber = FakeTranscriber()
        u2_gate = transcriber.hold(b"U2")
        coordinator, playback = make_coordinator(generator=generator, transcriber=transcriber)

        coordinator.on_utterance_finalized("U1")
        await asyncio.sleep(0)
        coordinator.on_speech_start()
        pending = asyncio.create_task(coordinator.on_speech_end(b"U2"))
        await asyncio.sleep(0)
        assert coordinator.caller_speaking

        u1_gate.set()
        await coordinator.wait_idle()
        assert [m.content for m in coordinator.session.timeline] == ["U1"]
        assert playback.played == []

        u2_gate.set()
        await pending
        await coordinator.wait_idle()

        assert not coordinator.caller_speaking
        assert [m.content for m in coordinator.session.timeline] == ["U1", "U2", "reply to: U2"]
        assert playback.played == [b"WAV:reply to: U2"]

    asyncio.run(run())


def test_superseded_end_call_leaves_call_open():
    async def run():
        generator = FakeGenerator(script=[tool_call(END_CALL, reason="caller hung up")])
        u1_gate = generator.hold("U1")
        u2_gate = generator.hold("U2")
        coordinator, playback = make_coordinator(generator=generator)

        coordinator.on_utterance_finalized("U1")
        await asyncio.sleep(0)
        coordinator.on_utterance_finalized("U2")
        await asyncio.sleep(0)

        u1_gate.set()
        for _ in range(5):
            await asyncio.sleep(0)
        session = coordinator.session
        assert not session.has_ended
        assert session.end_reason is None

        u2_gate.set()
        await coordinator.wait_idle()
        assert [m.content for m in session.timeline] == ["U1", "U2", "reply to: U2"]

        coordinator.on_utterance_finalized("U3")
        await coordinator.wait_idle()
        assert not session.has_ended
        assert session.timeline[-1].content == "reply to: U3"

    asyncio.run(run())


def test_end_call_during_barge_in_is_not_applied():
    async def run():
        generator = FakeGenerator(script=[tool_call(END_CALL, reason="help dispatched")])
        gate = generator.hold("they're here")
        coordinator, playback = make_coordinator(generator=generator)

        coordinator.on_utterance_finalized("they're here")
        await asyncio.sleep(0)
        coordinator.on_speech_start()
        gate.set()
        await coordinator.wait_idle()

        assert not coordinator.session.has_ended
        assert [m.role for m in coordinator.session.timeline] == [Role.USER]

    asyncio.run(run())
