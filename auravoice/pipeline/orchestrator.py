"""
AuraVoice - Turn Orchestrator
=============================

Runs the conversation loop:

    Idle -> Listening -> Processing -> Speaking -> Idle -> (restart) -> Listening

1. Recognizer connected, silence detector armed, orb follows the mic
2. Final transcript -> Processing: reply generated through the provider chain
3. Reply ready -> Speaking: reply synthesized and played
4. Playback done (or audio failed) -> Idle: recognizer closed, and after a
   short delay reopened for the next turn

One turn at a time. A final transcript that arrives while a reply is being
generated or spoken is dropped, not queued.

All state changes happen in one consumer task that drains an ordered event
queue. Recognizer callbacks, silence timer, generation and synthesis tasks
only post events. Every event carries the session epoch so late results
from a stopped session are discarded.

This file contains the state machine and the CLI entry point.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
import asyncio
import logging
import sys
import time

from ..core.audio_analyzer import AudioIntensityAnalyzer
from ..core.llm import ReplyGenerator
from ..core.silence_detector import SilenceDetector, SilenceDetectorConfig
from ..core.stt import SpeechRecognizer, Transcript
from ..core.tts import SpeechSynthesizer
from .config import PHASE_DISPLAY, ConnectionStatus, OrchestratorConfig, Phase
from .events import (
    Event,
    FinalizeDone,
    ReconnectDue,
    RecognitionFailed,
    ReplyFailed,
    ReplyReady,
    RestartDue,
    RestartRequested,
    SilenceDetected,
    SpeechFinished,
    TranscriptReceived,
)
from .feedback import RenderFrame, VisualFeedbackMapper
from .turns import TranscriptEntry, TranscriptLog

log = logging.getLogger(__name__)

PhaseListener = Callable[[Phase, Phase], None]
Renderer = Callable[[RenderFrame], None]


@dataclass(frozen=True)
class OrchestratorSnapshot:
    """Read model for the presentation layer."""
    phase: Phase
    status: ConnectionStatus
    entries: Tuple[TranscriptEntry, ...]
    latency_ms: Optional[float]
    user_subtitle: str
    assistant_text: str
    frame: RenderFrame
    error: Optional[str]


class TurnOrchestrator:
    """
    Conversational turn state machine.

    Usage:
        orchestrator = TurnOrchestrator(recognizer, generator, synthesizer)
        orchestrator.add_listener(lambda old, new: print(new))
        await orchestrator.start_session()
        ...
        await orchestrator.stop()
    """

    def __init__(
        self,
        recognizer: SpeechRecognizer,
        generator: ReplyGenerator,
        synthesizer: SpeechSynthesizer,
        config: Optional[OrchestratorConfig] = None,
        analyzer: Optional[AudioIntensityAnalyzer] = None,
        feedback: Optional[VisualFeedbackMapper] = None,
        renderer: Optional[Renderer] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or OrchestratorConfig()
        self.recognizer = recognizer
        self.generator = generator
        self.synthesizer = synthesizer
        self.analyzer = analyzer or AudioIntensityAnalyzer()
        self.feedback = feedback or VisualFeedbackMapper()
        self.renderer = renderer
        self.silence_detector = SilenceDetector(
            SilenceDetectorConfig(
                threshold=self.config.silence_threshold,
                silence_duration_sec=self.config.silence_duration_sec,
                poll_interval_sec=self.config.silence_poll_interval_sec,
            ),
            clock=clock,
        )
        self._clock = clock

        # State (mutated only by the consumer task)
        self._phase = Phase.IDLE
        self._status = ConnectionStatus.DISCONNECTED
        self._transcript = TranscriptLog()
        self._user_subtitle = ""
        self._assistant_text = ""
        self._error: Optional[str] = None
        self._latency_ms: Optional[float] = None
        self._last_transcript_at: Optional[float] = None
        self._turn_id = 0
        self._reconnect_attempts = 0
        self._connection = 0

        # Session
        self._epoch = 0
        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._sampler: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._finalize_task: Optional[asyncio.Task] = None

        self._listeners: List[PhaseListener] = []

    # =========================================================================
    # Read model
    # =========================================================================

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def transcript(self) -> List[TranscriptEntry]:
        return self._transcript.entries

    @property
    def latency_ms(self) -> Optional[float]:
        return self._latency_ms

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def epoch(self) -> int:
        return self._epoch

    def snapshot(self) -> OrchestratorSnapshot:
        return OrchestratorSnapshot(
            phase=self._phase,
            status=self._status,
            entries=tuple(self._transcript.entries),
            latency_ms=self._latency_ms,
            user_subtitle=self._user_subtitle,
            assistant_text=self._assistant_text,
            frame=self.feedback.frame,
            error=self._error,
        )

    def add_listener(self, listener: PhaseListener) -> None:
        """Call listener(old_phase, new_phase) after every transition."""
        self._listeners.append(listener)

    def remove_listener(self, listener: PhaseListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # =========================================================================
    # Session control
    # =========================================================================

    async def start_session(self) -> None:
        """Open the recognizer, start sampling and enter Listening."""
        if self._running:
            return

        self._running = True
        self._epoch += 1
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._reconnect_attempts = 0
        self.feedback.reset()

        log.info("Session %d starting", self._epoch)
        self._consumer = self._loop.create_task(self._consume())
        self._sampler = self._loop.create_task(self._sample_loop())

        # The first connect runs on the consumer like every later one
        self._post(RestartDue(self._epoch))
        await self._queue.join()

    async def stop(self) -> None:
        """
        Tear the session down.

        Cancels the sampling loop, timers and any in-flight turn, releases
        the microphone and closes playback. Results that arrive later are
        discarded.
        """
        if not self._running:
            return
        self._running = False
        self._epoch += 1

        current = asyncio.current_task()
        tasks = [self._sampler, self._timer, self._turn_task, self._finalize_task, self._consumer]
        self._sampler = self._timer = self._turn_task = self._finalize_task = self._consumer = None
        for task in tasks:
            if task is not None and task is not current and not task.done():
                task.cancel()
        for task in tasks:
            if task is not None and task is not current:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception:
                    log.exception("Task failed during teardown")

        await self.silence_detector.stop()
        await self._disconnect()
        await self.synthesizer.aclose()
        await self.generator.aclose()

        self._status = ConnectionStatus.DISCONNECTED
        self._set_phase(Phase.IDLE)
        log.info("Session stopped")

    async def restart(self) -> None:
        """Manual restart: abandon the current turn and listen again."""
        if self._running:
            self._post(RestartRequested(self._epoch))

    # =========================================================================
    # Event plumbing
    # =========================================================================

    def _post(self, event: Event) -> None:
        """Queue an event. Safe to call from any thread."""
        if self._queue is None or self._loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(event)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if event.epoch != self._epoch:
                    log.debug("Dropping stale %s from session %d", type(event).__name__, event.epoch)
                    continue
                await self._handle(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Error handling %s", type(event).__name__)
            finally:
                self._queue.task_done()

    async def _handle(self, event: Event) -> None:
        if isinstance(event, (TranscriptReceived, RecognitionFailed)) and event.connection != self._connection:
            log.debug("Dropping %s from closed connection %d", type(event).__name__, event.connection)
            return

        if isinstance(event, TranscriptReceived):
            await self._on_transcript(event)
        elif isinstance(event, SilenceDetected):
            self._on_silence()
        elif isinstance(event, FinalizeDone):
            self._on_finalize_done()
        elif isinstance(event, ReplyReady):
            self._on_reply_ready(event)
        elif isinstance(event, ReplyFailed):
            await self._on_reply_failed(event)
        elif isinstance(event, SpeechFinished):
            await self._on_speech_finished(event)
        elif isinstance(event, RestartDue):
            if self._phase == Phase.IDLE:
                await self._connect()
        elif isinstance(event, ReconnectDue):
            if self._phase == Phase.IDLE and self._status == ConnectionStatus.ERROR:
                log.info("Reconnect attempt %d/%d", event.attempt, self.config.max_reconnect_attempts)
                await self._connect()
        elif isinstance(event, RecognitionFailed):
            await self._on_recognition_failed(event.error)
        elif isinstance(event, RestartRequested):
            await self._on_restart_requested()

    # =========================================================================
    # Transitions
    # =========================================================================

    def _set_phase(self, phase: Phase) -> None:
        old = self._phase
        if old == phase:
            return
        self._phase = phase
        log.info("Phase %s -> %s", old.value, phase.value)
        for listener in list(self._listeners):
            try:
                listener(old, phase)
            except Exception:
                log.exception("Phase listener failed")

    async def _connect(self) -> None:
        epoch = self._epoch
        self._connection += 1
        connection = self._connection
        self._status = ConnectionStatus.CONNECTING

        def on_transcript(transcript: Transcript) -> None:
            self._post(TranscriptReceived(epoch, connection, transcript.text, transcript.is_final))

        def on_error(error: Exception) -> None:
            self._post(RecognitionFailed(epoch, connection, error))

        try:
            await self.recognizer.connect(on_transcript, on_error)
        except PermissionError as e:
            self._fail_permanently(e)
            return
        except (ConnectionError, OSError) as e:
            await self._on_connection_error(e)
            return

        self._status = ConnectionStatus.CONNECTED
        self._error = None
        self._reconnect_attempts = 0

        self.analyzer.reset()
        stream = self.recognizer.get_media_stream()
        if stream is not None:
            stream.add_listener(self.analyzer.push)

        self._user_subtitle = ""
        self._set_phase(Phase.LISTENING)
        self._arm_silence_detector()

    def _arm_silence_detector(self) -> None:
        if not self.config.use_silence_detector:
            return
        epoch = self._epoch
        self.silence_detector.start(
            self.analyzer.intensity,
            lambda: self._post(SilenceDetected(epoch)),
        )

    async def _on_transcript(self, event: TranscriptReceived) -> None:
        text = event.text.strip()
        if not text:
            return

        if self._phase != Phase.LISTENING:
            # One turn at a time: speech during Processing/Speaking is dropped
            log.debug(
                "Ignoring %s transcript in %s: %r",
                "final" if event.is_final else "interim", self._phase.value, text,
            )
            return

        now = self._clock()
        if self._last_transcript_at is not None:
            self._latency_ms = (now - self._last_transcript_at) * 1000
        self._last_transcript_at = now

        entry = self._transcript.add_user(text, event.is_final)
        self._user_subtitle = entry.display(self.config.interim_marker)
        if not event.is_final:
            return

        await self.silence_detector.stop()
        self._turn_id += 1
        self._set_phase(Phase.PROCESSING)
        self._turn_task = self._loop.create_task(self._generate(self._epoch, self._turn_id, text))

    def _on_silence(self) -> None:
        if self._phase != Phase.LISTENING:
            return
        if self._finalize_task is not None and not self._finalize_task.done():
            return
        self._finalize_task = self._loop.create_task(self._finalize(self._epoch))

    def _on_finalize_done(self) -> None:
        if self._phase != Phase.LISTENING:
            return
        # Nothing recognizable was said: keep listening
        self._transcript.discard_interim()
        self._user_subtitle = ""
        self._arm_silence_detector()

    def _on_reply_ready(self, event: ReplyReady) -> None:
        if event.turn_id != self._turn_id or self._phase != Phase.PROCESSING:
            return
        self._transcript.add_assistant(event.text)
        self._assistant_text = event.text
        self._set_phase(Phase.SPEAKING)
        self._turn_task = self._loop.create_task(self._speak(self._epoch, event.turn_id, event.text))

    async def _on_reply_failed(self, event: ReplyFailed) -> None:
        if event.turn_id != self._turn_id or self._phase != Phase.PROCESSING:
            return
        message = f"{self.config.error_reply_prefix}{event.error}"
        log.error("Reply generation failed: %s", event.error)
        self._transcript.add_assistant(message)
        self._assistant_text = message
        self._set_phase(Phase.IDLE)
        await self._schedule_restart()

    async def _on_speech_finished(self, event: SpeechFinished) -> None:
        if event.turn_id != self._turn_id or self._phase != Phase.SPEAKING:
            return
        if event.error is not None:
            log.error("Reply could not be spoken: %s", event.error)
            self._transcript.annotate_last_assistant(self.config.audio_failed_suffix)
            self._assistant_text = f"{self._assistant_text}{self.config.audio_failed_suffix}"
        self._set_phase(Phase.IDLE)
        await self._schedule_restart()

    async def _disconnect(self) -> None:
        # Anything the closed connection still reports is stale
        self._connection += 1
        await self.recognizer.disconnect()

    async def _schedule_restart(self) -> None:
        await self._disconnect()
        self._start_timer(self.config.restart_delay_sec, RestartDue(self._epoch))

    def _start_timer(self, delay: float, event: Event) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()

        async def fire() -> None:
            await asyncio.sleep(delay)
            self._post(event)

        self._timer = self._loop.create_task(fire())

    def _fail_permanently(self, error: Exception) -> None:
        self._status = ConnectionStatus.ERROR
        self._error = str(error)
        log.error("Microphone unavailable, not retrying: %s", error)
        if self._phase == Phase.LISTENING:
            self._set_phase(Phase.IDLE)

    async def _on_connection_error(self, error: Exception) -> None:
        self._status = ConnectionStatus.ERROR
        self._error = str(error)
        await self.silence_detector.stop()
        await self._disconnect()
        if self._phase == Phase.LISTENING:
            self._transcript.discard_interim()
            self._set_phase(Phase.IDLE)

        if self._reconnect_attempts >= self.config.max_reconnect_attempts:
            log.error("Recognition connection failed, giving up after %d attempts: %s",
                      self._reconnect_attempts, error)
            return

        self._reconnect_attempts += 1
        log.warning(
            "Recognition connection error (%s), retrying in %.1fs (%d/%d)",
            error, self.config.reconnect_delay_sec,
            self._reconnect_attempts, self.config.max_reconnect_attempts,
        )
        self._start_timer(
            self.config.reconnect_delay_sec,
            ReconnectDue(self._epoch, self._reconnect_attempts),
        )

    async def _on_recognition_failed(self, error: Exception) -> None:
        if isinstance(error, PermissionError):
            await self.silence_detector.stop()
            await self._disconnect()
            if self._phase == Phase.LISTENING:
                self._transcript.discard_interim()
                self._user_subtitle = ""
            self._fail_permanently(error)
            return
        if self._phase in (Phase.PROCESSING, Phase.SPEAKING):
            # The turn finishes on its own; the restart reconnects
            log.warning("Recognition error during %s: %s", self._phase.value, error)
            return
        await self._on_connection_error(error)

    async def _on_restart_requested(self) -> None:
        log.info("Manual restart")
        self._turn_id += 1
        for task in (self._turn_task, self._finalize_task):
            if task is not None and not task.done():
                task.cancel()
        self._turn_task = self._finalize_task = None

        self.synthesizer.stop()
        await self.silence_detector.stop()
        self._transcript.discard_interim()
        self._reconnect_attempts = 0
        self._error = None
        self._status = ConnectionStatus.DISCONNECTED
        self._set_phase(Phase.IDLE)
        await self._schedule_restart()

    # =========================================================================
    # Background tasks (post events only)
    # =========================================================================

    async def _generate(self, epoch: int, turn_id: int, text: str) -> None:
        try:
            reply = await self.generator.generate(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._post(ReplyFailed(epoch, turn_id, e))
            return
        self._post(ReplyReady(epoch, turn_id, reply))

    async def _speak(self, epoch: int, turn_id: int, text: str) -> None:
        try:
            await self.synthesizer.speak(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._post(SpeechFinished(epoch, turn_id, e))
            return
        self._post(SpeechFinished(epoch, turn_id))

    async def _finalize(self, epoch: int) -> None:
        try:
            await self.recognizer.finalize()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("Finalize failed: %s", e)
        self._post(FinalizeDone(epoch))

    async def _sample_loop(self) -> None:
        """Analyzer -> feedback mapper -> renderer, once per tick."""
        interval = self.config.tick_interval_sec
        last = self._clock()
        while True:
            await asyncio.sleep(interval)
            now = self._clock()
            dt, last = now - last, now

            intensity = self.analyzer.intensity() if self.recognizer.is_connected else 0.0
            frame = self.feedback.update(self._phase, intensity, dt)
            if self.renderer is not None:
                try:
                    self.renderer(frame)
                except Exception:
                    log.exception("Renderer failed")


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def main():
    """Run the voice assistant from the terminal."""
    from ..config.settings import load_settings
    from ..core.health import check_providers
    from .components import ComponentManager

    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.debug.log_level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    print()
    print("🎙️  AuraVoice")
    print("=" * 40)
    print()

    try:
        components = ComponentManager(settings)
        components.initialize_all()
    except (ImportError, FileNotFoundError) as e:
        print(f"\n❌ Error: {e}")
        print("\nInstall the audio stack and models:")
        print("  pip install faster-whisper piper-tts sounddevice")
        print("  Piper voices: models/tts/**/*.onnx")
        sys.exit(1)

    orchestrator = TurnOrchestrator(
        components.recognizer,
        components.generator,
        components.synthesizer,
        components.orchestrator_config(),
    )

    def print_status(old: Phase, new: Phase) -> None:
        snapshot = orchestrator.snapshot()
        if new == Phase.PROCESSING and snapshot.entries:
            latency = f" ({snapshot.latency_ms:.0f}ms)" if snapshot.latency_ms else ""
            print(f"\nYou: {snapshot.entries[-1].text}{latency}")
        elif new == Phase.SPEAKING:
            print(f"Assistant: {snapshot.assistant_text}")
        elif new == Phase.IDLE and snapshot.assistant_text.endswith(orchestrator.config.audio_failed_suffix):
            print(f"Assistant: {snapshot.assistant_text}")
        print(f"Status: {PHASE_DISPLAY[new]}")

    orchestrator.add_listener(print_status)

    async def run() -> None:
        services = await check_providers(settings)
        for name, status in services.items():
            mark = "✓" if status.ok else "✗"
            print(f"  {mark} {name}" + ("" if status.ok else f" ({status.error})"))
        print()

        await orchestrator.start_session()
        if orchestrator.status == ConnectionStatus.ERROR:
            print(f"⚠️  Recognition unavailable: {orchestrator.snapshot().error}")
        try:
            await asyncio.Event().wait()
        finally:
            await orchestrator.stop()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass

    print("\n👋 Goodbye!")


if __name__ == "__main__":
    main()
