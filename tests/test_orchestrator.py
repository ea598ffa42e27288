"""
Tests: Turn Orchestrator
========================

Drives the full Idle -> Listening -> Processing -> Speaking -> Idle loop
with scripted recognizer, generator and synthesizer fakes.

Run with pytest:
    pytest tests/test_orchestrator.py -v
"""

import asyncio

import pytest

from auravoice.core.errors import (
    MicrophonePermissionError,
    ProviderExhaustedError,
    RecognitionConnectionError,
    SynthesisExhaustedError,
    TransportError,
)
from auravoice.pipeline.config import ConnectionStatus, OrchestratorConfig, Phase
from auravoice.pipeline.orchestrator import TurnOrchestrator

from conftest import FakeAnalyzer, FakeGenerator, FakeRecognizer, FakeSynthesizer, wait_until


def fast_config(**overrides) -> OrchestratorConfig:
    values = dict(
        restart_delay_sec=0.05,
        reconnect_delay_sec=0.05,
        use_silence_detector=False,
        tick_hz=100.0,
    )
    values.update(overrides)
    return OrchestratorConfig(**values)


def make_orchestrator(recognizer, generator, synthesizer, **kwargs):
    config = kwargs.pop("config", None) or fast_config()
    return TurnOrchestrator(recognizer, generator, synthesizer, config, **kwargs)


# =============================================================================
# Happy Path
# =============================================================================

@pytest.mark.asyncio
async def test_full_turn(recognizer, generator, synthesizer):
    """Interim then final -> reply spoken -> Idle -> Listening after the delay."""
    loop = asyncio.get_running_loop()
    orchestrator = make_orchestrator(
        recognizer, generator, synthesizer, config=fast_config(restart_delay_sec=0.5),
    )
    transitions = []
    orchestrator.add_listener(lambda old, new: transitions.append((new, loop.time())))

    await orchestrator.start_session()
    try:
        assert orchestrator.phase == Phase.LISTENING
        assert orchestrator.status == ConnectionStatus.CONNECTED

        recognizer.emit("hel")
        await wait_until(lambda: orchestrator.snapshot().user_subtitle == "hel …")

        recognizer.emit("hello there", is_final=True)
        await wait_until(lambda: synthesizer.spoken == ["I hear you."])
        await wait_until(lambda: recognizer.connects == 2 and orchestrator.phase == Phase.LISTENING)

        phases = [phase for phase, _ in transitions]
        assert phases == [
            Phase.LISTENING, Phase.PROCESSING, Phase.SPEAKING, Phase.IDLE, Phase.LISTENING,
        ]
        idle_at = transitions[3][1]
        relisten_at = transitions[4][1]
        assert relisten_at - idle_at >= 0.45

        entries = orchestrator.transcript
        assert [(e.role, e.text) for e in entries] == [
            ("user", "hello there"),
            ("assistant", "I hear you."),
        ]
        assert entries[0].is_final
        assert generator.prompts == ["hello there"]
        assert orchestrator.snapshot().assistant_text == "I hear you."
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_interims_collapse_into_one_user_entry(recognizer, generator, synthesizer):
    """Each interim replaces the previous one; the final replaces the last."""
    generator.gate = asyncio.Event()
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.start_session()
    try:
        for partial in ("hel", "hello", "hello th"):
            recognizer.emit(partial)
        await wait_until(lambda: orchestrator.transcript and orchestrator.transcript[-1].text == "hello th")
        assert len(orchestrator.transcript) == 1
        assert not orchestrator.transcript[0].is_final

        recognizer.emit("hello there", is_final=True)
        await wait_until(lambda: orchestrator.phase == Phase.PROCESSING)
        assert len(orchestrator.transcript) == 1
        assert orchestrator.transcript[0].text == "hello there"
        assert orchestrator.transcript[0].is_final
    finally:
        generator.gate.set()
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_latency_measured_between_transcripts(recognizer, generator, synthesizer):
    clock_value = [100.0]
    generator.gate = asyncio.Event()
    orchestrator = make_orchestrator(
        recognizer, generator, synthesizer, clock=lambda: clock_value[0],
    )
    await orchestrator.start_session()
    try:
        recognizer.emit("hel")
        await wait_until(lambda: len(orchestrator.transcript) == 1)
        assert orchestrator.latency_ms is None

        clock_value[0] = 100.25
        recognizer.emit("hello", is_final=True)
        await wait_until(lambda: orchestrator.phase == Phase.PROCESSING)
        assert orchestrator.latency_ms == pytest.approx(250.0)
    finally:
        generator.gate.set()
        await orchestrator.stop()


# =============================================================================
# One Turn At A Time
# =============================================================================

@pytest.mark.asyncio
async def test_transcripts_ignored_while_busy(recognizer, generator, synthesizer):
    """Finals during Processing or Speaking are dropped, not queued."""
    generator.gate = asyncio.Event()
    synthesizer.gate = asyncio.Event()
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.start_session()
    try:
        recognizer.emit("first question", is_final=True)
        await wait_until(lambda: orchestrator.phase == Phase.PROCESSING)

        recognizer.emit("interrupting", is_final=True)
        await asyncio.sleep(0.05)
        assert orchestrator.phase == Phase.PROCESSING
        assert [e.text for e in orchestrator.transcript] == ["first question"]

        generator.gate.set()
        await wait_until(lambda: orchestrator.phase == Phase.SPEAKING)

        recognizer.emit("talking over it", is_final=True)
        await asyncio.sleep(0.05)
        assert orchestrator.phase == Phase.SPEAKING
        assert [e.text for e in orchestrator.transcript] == ["first question", "I hear you."]

        synthesizer.gate.set()
        await wait_until(lambda: recognizer.connects == 2 and orchestrator.phase == Phase.LISTENING)
        assert generator.prompts == ["first question"]
        assert synthesizer.spoken == ["I hear you."]
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_blank_transcript_is_ignored(recognizer, generator, synthesizer):
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.start_session()
    try:
        recognizer.emit("   ", is_final=True)
        await asyncio.sleep(0.05)
        assert orchestrator.phase == Phase.LISTENING
        assert orchestrator.transcript == []
        assert generator.prompts == []
    finally:
        await orchestrator.stop()


# =============================================================================
# Failures During A Turn
# =============================================================================

@pytest.mark.asyncio
async def test_generation_failure_shows_error_reply(recognizer, synthesizer):
    failures = [TransportError("openai", "boom")]
    generator = FakeGenerator(error=ProviderExhaustedError("generation", failures))
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.start_session()
    try:
        recognizer.emit("hello there", is_final=True)
        await wait_until(lambda: len(orchestrator.transcript) == 2)

        reply = orchestrator.transcript[-1]
        assert reply.role == "assistant"
        assert reply.text.startswith("Sorry, I ran into an issue: ")
        assert synthesizer.spoken == []

        await wait_until(lambda: recognizer.connects == 2 and orchestrator.phase == Phase.LISTENING)
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_audio_failure_annotates_reply(recognizer, generator):
    synthesizer = FakeSynthesizer(error=SynthesisExhaustedError([TransportError("piper", "no voice")]))
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.start_session()
    try:
        recognizer.emit("hello there", is_final=True)
        await wait_until(lambda: recognizer.connects == 2 and orchestrator.phase == Phase.LISTENING)

        assert orchestrator.transcript[-1].text == "I hear you. (audio failed)"
        assert orchestrator.snapshot().assistant_text == "I hear you. (audio failed)"
    finally:
        await orchestrator.stop()


# =============================================================================
# Session Lifecycle
# =============================================================================

@pytest.mark.asyncio
async def test_stop_discards_late_results(recognizer, generator, synthesizer):
    """Callbacks bound to a stopped session change nothing in the next one."""
    generator.gate = asyncio.Event()
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.start_session()
    first_epoch = orchestrator.epoch

    recognizer.emit("first", is_final=True)
    await wait_until(lambda: orchestrator.phase == Phase.PROCESSING)
    await orchestrator.stop()

    assert orchestrator.phase == Phase.IDLE
    assert orchestrator.status == ConnectionStatus.DISCONNECTED
    assert not orchestrator.is_running
    assert synthesizer.closed and generator.closed

    generator.gate.set()
    await asyncio.sleep(0.05)
    assert synthesizer.spoken == []

    await orchestrator.start_session()
    try:
        assert orchestrator.epoch > first_epoch
        assert orchestrator.phase == Phase.LISTENING

        # Late transcript from the first session's recognizer callbacks
        recognizer.emit("stale words", is_final=True, connection=0)
        await asyncio.sleep(0.05)
        assert orchestrator.phase == Phase.LISTENING
        assert [e.text for e in orchestrator.transcript] == ["first"]
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_stop_is_idempotent(recognizer, generator, synthesizer):
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.stop()
    await orchestrator.start_session()
    await orchestrator.stop()
    await orchestrator.stop()
    assert recognizer.disconnects == 1


@pytest.mark.asyncio
async def test_manual_restart_abandons_turn(recognizer, generator, synthesizer):
    generator.gate = asyncio.Event()
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.start_session()
    try:
        recognizer.emit("hello", is_final=True)
        await wait_until(lambda: orchestrator.phase == Phase.PROCESSING)

        await orchestrator.restart()
        await wait_until(lambda: recognizer.connects == 2 and orchestrator.phase == Phase.LISTENING)
        assert synthesizer.stopped >= 1

        generator.gate.set()
        await asyncio.sleep(0.05)
        assert synthesizer.spoken == []
        assert orchestrator.phase == Phase.LISTENING
    finally:
        await orchestrator.stop()


# =============================================================================
# Recognition Errors
# =============================================================================

@pytest.mark.asyncio
async def test_permission_error_is_not_retried(generator, synthesizer):
    recognizer = FakeRecognizer(connect_errors=[MicrophonePermissionError("Microphone access denied")])
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.start_session()
    try:
        assert orchestrator.status == ConnectionStatus.ERROR
        assert orchestrator.phase == Phase.IDLE
        assert "denied" in orchestrator.snapshot().error

        await asyncio.sleep(0.2)
        assert recognizer.connects == 1
        assert orchestrator.status == ConnectionStatus.ERROR
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_connection_error_reconnects(generator, synthesizer):
    recognizer = FakeRecognizer(connect_errors=[RecognitionConnectionError("socket closed")])
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.start_session()
    try:
        assert orchestrator.status == ConnectionStatus.ERROR
        await wait_until(lambda: orchestrator.phase == Phase.LISTENING)
        assert recognizer.connects == 2
        assert orchestrator.status == ConnectionStatus.CONNECTED
        assert orchestrator.snapshot().error is None
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_reconnect_gives_up_then_manual_restart(generator, synthesizer):
    errors = [RecognitionConnectionError("down %d" % i) for i in range(4)]
    recognizer = FakeRecognizer(connect_errors=errors)
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.start_session()
    try:
        await wait_until(lambda: recognizer.connects == 4)
        await asyncio.sleep(0.2)
        assert recognizer.connects == 4
        assert orchestrator.status == ConnectionStatus.ERROR
        assert orchestrator.phase == Phase.IDLE

        await orchestrator.restart()
        await wait_until(lambda: orchestrator.phase == Phase.LISTENING)
        assert recognizer.connects == 5
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_runtime_recognition_error_reconnects(recognizer, generator, synthesizer):
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.start_session()
    try:
        recognizer.emit("half a sent")
        await wait_until(lambda: len(orchestrator.transcript) == 1)

        recognizer.fail(RecognitionConnectionError("microphone stream stopped"))
        await wait_until(lambda: recognizer.connects == 2 and orchestrator.phase == Phase.LISTENING)
        # The unfinished interim is dropped with the broken connection
        assert orchestrator.transcript == []
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_runtime_permission_error_stops_listening(recognizer, generator, synthesizer):
    orchestrator = make_orchestrator(recognizer, generator, synthesizer)
    await orchestrator.start_session()
    try:
        recognizer.emit("half a sent")
        await wait_until(lambda: len(orchestrator.transcript) == 1)

        recognizer.fail(MicrophonePermissionError("revoked"))
        await wait_until(lambda: orchestrator.status == ConnectionStatus.ERROR)
        assert orchestrator.phase == Phase.IDLE
        assert orchestrator.transcript == []
        assert orchestrator.snapshot().user_subtitle == ""
        await asyncio.sleep(0.2)
        assert recognizer.connects == 1
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_late_error_from_closed_connection_is_ignored(recognizer, generator, synthesizer):
    """A connection closed at turn end cannot turn the restart into a reconnect."""
    synthesizer.gate = asyncio.Event()
    orchestrator = make_orchestrator(
        recognizer, generator, synthesizer,
        config=fast_config(restart_delay_sec=0.3, reconnect_delay_sec=2.0),
    )
    await orchestrator.start_session()
    try:
        recognizer.emit("hello", is_final=True)
        await wait_until(lambda: orchestrator.phase == Phase.SPEAKING)
        synthesizer.gate.set()
        await wait_until(lambda: orchestrator.phase == Phase.IDLE)

        recognizer.fail(RecognitionConnectionError("socket closed"), connection=0)
        await wait_until(
            lambda: recognizer.connects == 2 and orchestrator.phase == Phase.LISTENING,
            timeout=1.0,
        )
        assert orchestrator.status == ConnectionStatus.CONNECTED
        assert orchestrator.snapshot().error is None

        # Leftover text from the closed connection is not a new turn
        recognizer.emit("leftover", is_final=True, connection=0)
        await asyncio.sleep(0.05)
        assert orchestrator.phase == Phase.LISTENING
        assert [e.text for e in orchestrator.transcript] == ["hello", "I hear you."]
    finally:
        await orchestrator.stop()


# =============================================================================
# Silence Detection
# =============================================================================

def silence_config() -> OrchestratorConfig:
    return fast_config(
        use_silence_detector=True,
        silence_threshold=0.08,
        silence_duration_sec=0.1,
        silence_poll_interval_sec=0.01,
    )


@pytest.mark.asyncio
async def test_silence_finalizes_utterance(recognizer, generator, synthesizer):
    analyzer = FakeAnalyzer(level=0.5)
    recognizer.final_on_finalize = "hello there"
    orchestrator = make_orchestrator(
        recognizer, generator, synthesizer, config=silence_config(), analyzer=analyzer,
    )
    await orchestrator.start_session()
    try:
        await wait_until(lambda: orchestrator.silence_detector.speech_detected)
        analyzer.level = 0.0

        await wait_until(lambda: synthesizer.spoken == ["I hear you."])
        assert recognizer.finalizes == 1
        assert generator.prompts == ["hello there"]
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_silence_without_result_keeps_listening(recognizer, generator, synthesizer):
    analyzer = FakeAnalyzer(level=0.5)
    orchestrator = make_orchestrator(
        recognizer, generator, synthesizer, config=silence_config(), analyzer=analyzer,
    )
    await orchestrator.start_session()
    try:
        await wait_until(lambda: orchestrator.silence_detector.speech_detected)
        analyzer.level = 0.0

        await wait_until(lambda: recognizer.finalizes == 1)
        await wait_until(lambda: orchestrator.silence_detector.is_running)
        assert orchestrator.phase == Phase.LISTENING
        assert generator.prompts == []
    finally:
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_silence_never_fires_without_speech(recognizer, generator, synthesizer):
    analyzer = FakeAnalyzer(level=0.0)
    orchestrator = make_orchestrator(
        recognizer, generator, synthesizer, config=silence_config(), analyzer=analyzer,
    )
    await orchestrator.start_session()
    try:
        await asyncio.sleep(0.3)
        assert recognizer.finalizes == 0
    finally:
        await orchestrator.stop()


# =============================================================================
# Visual Feedback
# =============================================================================

@pytest.mark.asyncio
async def test_feedback_holds_last_listening_frame(recognizer, generator, synthesizer):
    analyzer = FakeAnalyzer(level=0.6)
    generator.gate = asyncio.Event()
    frames = []
    orchestrator = make_orchestrator(recognizer, generator, synthesizer, analyzer=analyzer)
    orchestrator.renderer = lambda frame: frames.append((orchestrator.phase, frame))

    await orchestrator.start_session()
    try:
        await wait_until(lambda: sum(1 for phase, _ in frames if phase == Phase.LISTENING) >= 5)
        recognizer.emit("hello", is_final=True)
        await wait_until(lambda: sum(1 for phase, _ in frames if phase == Phase.PROCESSING) >= 5)

        listening = [frame for phase, frame in frames if phase == Phase.LISTENING]
        processing = [frame for phase, frame in frames if phase == Phase.PROCESSING]
        assert listening[-1].brightness > 1.0
        assert all(frame == listening[-1] for frame in processing)
    finally:
        generator.gate.set()
        await orchestrator.stop()


@pytest.mark.asyncio
async def test_renderer_failure_does_not_stop_sampling(recognizer, generator, synthesizer):
    calls = []

    def broken_renderer(frame):
        calls.append(frame)
        raise RuntimeError("canvas gone")

    orchestrator = make_orchestrator(recognizer, generator, synthesizer, renderer=broken_renderer)
    await orchestrator.start_session()
    try:
        await wait_until(lambda: len(calls) >= 3)
    finally:
        await orchestrator.stop()
