import asyncio
import os
import sys
from types import SimpleNamespace

import numpy as np

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))

from vera.conversation import TurnState
from vera.error_handler import DeviceError, NetworkError, PlaybackError, ProtocolError, user_message
from vera.events import (
    DisableListening,
    PhaseResult,
    PlaybackFinished,
    PlaybackStarted,
    ResumeListening,
    UtteranceBoundary,
)
from vera.pipeline import Command, Failed, Reply, ServerPaused, Skip
from vera.turn_taking import TurnTakingMachine
from vera.utterance import UtteranceBuffer
from vera.vad import VoiceActivityDetector

SILENT = np.zeros(2048, dtype=np.float32)
LOUD = np.full(2048, 0.05, dtype=np.float32)
FRAGMENT = b"\x01\x00" * 400


class FakeSource:
    def __init__(self, window=SILENT, fail=False):
        self.window = window
        self.fail = fail
        self.open_count = 0
        self.sink = None

    async def open(self):
        if self.fail:
            raise DeviceError("Permission denied", component="audio_input", operation="open")
        self.open_count += 1

    def attach(self, sink):
        self.sink = sink
        sink(FRAGMENT)

    def detach(self):
        self.sink = None

    def read_window(self):
        return self.window

    def close(self):
        pass


class FakeCommandClient:
    def __init__(self, fail=False):
        self.fail = fail
        self.commands = []

    def send_command(self, session_id, action):
        if self.fail:
            raise NetworkError("refused", component="backend", operation="command")
        self.commands.append((session_id, action))
        return {}


class FakePipeline:
    def __init__(self, *outcomes, client=None):
        self.outcomes = list(outcomes) or [Skip()]
        self.client = client or FakeCommandClient()
        self.calls = []
        self.gate = None

    async def process(self, payload):
        self.calls.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakePlayback:
    def __init__(self, settle=0.01, error=None):
        self.settle = settle
        self.error = error
        self.urls = []
        self.stopped = 0
        self.gate = None

    async def play(self, audio_url, turn_id, emit):
        self.urls.append(audio_url)
        emit(PlaybackStarted(turn_id, audio_url))
        if self.gate is not None:
            await self.gate.wait()
        emit(PlaybackFinished(turn_id, error=self.error, completed=self.error is None))
        await asyncio.sleep(self.settle)
        emit(ResumeListening(turn_id))

    def stop(self):
        self.stopped += 1


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def run_machine(scenario, source=None, pipeline=None, playback=None, detector=None,
                min_audio_bytes=100):
    async def main():
        parts = SimpleNamespace(
            source=source or FakeSource(),
            pipeline=pipeline or FakePipeline(),
            playback=playback or FakePlayback(),
            statuses=[],
        )
        machine = TurnTakingMachine(
            parts.source,
            UtteranceBuffer(sample_rate=16000, min_audio_bytes=min_audio_bytes),
            detector or VoiceActivityDetector(silence_ms=60000, max_wait_for_speech_ms=60000),
            parts.pipeline,
            parts.playback,
            session_id="sess-1",
            poll_interval_ms=5,
        )
        machine.add_status_listener(parts.statuses.append)
        runner = asyncio.create_task(machine.run())
        try:
            await scenario(machine, parts)
        finally:
            machine.shutdown()
            runner.cancel()

    asyncio.run(main())


async def start_listening(machine):
    machine.enable()
    await wait_until(lambda: machine.state is TurnState.LISTENING and machine.span_open)


async def speak(machine):
    """Wait for the VAD to mark the open span voiced, then end the utterance."""
    await wait_until(lambda: machine.span_open and machine.buffer.current is not None
                     and machine.buffer.current.has_voiced_frame)
    machine.post(UtteranceBoundary(machine.span_id))


def _states(parts):
    states = []
    for status in parts.statuses:
        if not states or states[-1] is not status.state:
            states.append(status.state)
    return states


def test_enable_opens_device_and_recording_span():
    async def scenario(machine, parts):
        assert machine.state is TurnState.IDLE
        await start_listening(machine)
        assert parts.source.open_count == 1
        assert machine.stats["spans_opened"] == 1
        assert not machine.paused

    run_machine(scenario)


def test_silence_is_rejected_without_network_call():
    async def scenario(machine, parts):
        await start_listening(machine)
        await wait_until(lambda: machine.stats["rejected"] >= 2)
        assert parts.pipeline.calls == []
        assert machine.state is TurnState.LISTENING
        assert machine.span_open
        assert machine.stats["spans_opened"] == machine.stats["rejected"] + 1

    run_machine(scenario, detector=VoiceActivityDetector(silence_ms=60000, max_wait_for_speech_ms=30))


def test_too_small_utterance_is_rejected():
    async def scenario(machine, parts):
        await start_listening(machine)
        await speak(machine)
        await wait_until(lambda: machine.stats["rejected"] == 1)
        assert parts.pipeline.calls == []
        assert machine.state is TurnState.LISTENING

    run_machine(scenario, source=FakeSource(window=LOUD), min_audio_bytes=10 ** 6)


def test_voiced_utterance_ends_on_silence_and_is_sent():
    source = FakeSource(window=LOUD)
    pipeline = FakePipeline(Skip())

    async def scenario(machine, parts):
        await start_listening(machine)
        await wait_until(lambda: machine.buffer.current is not None and machine.buffer.current.has_voiced_frame)
        source.window = SILENT
        await wait_until(lambda: len(pipeline.calls) == 1)
        assert pipeline.calls[0][:4] == b"RIFF"
        await wait_until(lambda: machine.state is TurnState.LISTENING and machine.span_open)
        assert machine.stats["accepted"] == 1

    run_machine(scenario, source=source, pipeline=pipeline,
                detector=VoiceActivityDetector(silence_ms=30, max_wait_for_speech_ms=60000))


def test_reply_is_played_then_listening_resumes():
    pipeline = FakePipeline(Reply(transcript="what's the weather", reply="Sunny.", audio_url="/audio/1.wav"))
    playback = FakePlayback()

    async def scenario(machine, parts):
        playback.gate = asyncio.Event()
        await start_listening(machine)
        await speak(machine)
        await wait_until(lambda: machine.state is TurnState.SPEAKING)

        # No recording while the reply plays
        assert not machine.span_open
        assert playback.urls == ["/audio/1.wav"]
        history = machine.conversation.history
        assert [(m.sender, m.content) for m in history] == [
            ("user", "what's the weather"), ("assistant", "Sunny.")]

        playback.gate.set()
        await wait_until(lambda: machine.state is TurnState.LISTENING and machine.span_open)
        assert _states(parts) == [TurnState.LISTENING, TurnState.PROCESSING,
                                  TurnState.SPEAKING, TurnState.LISTENING]
        assert machine.stats["replies"] == 1

    run_machine(scenario, source=FakeSource(window=LOUD), pipeline=pipeline, playback=playback)


def test_no_span_while_processing_and_stale_boundary_ignored():
    pipeline = FakePipeline(Skip())

    async def scenario(machine, parts):
        pipeline.gate = asyncio.Event()
        await start_listening(machine)
        old_span = machine.span_id
        await speak(machine)
        await wait_until(lambda: machine.state is TurnState.PROCESSING)
        assert not machine.span_open

        machine.post(UtteranceBoundary(old_span))
        await asyncio.sleep(0.02)
        assert machine.state is TurnState.PROCESSING
        assert machine.stats["accepted"] == 1
        assert len(pipeline.calls) == 1

        pipeline.gate.set()
        await wait_until(lambda: machine.state is TurnState.LISTENING and machine.span_open)
        assert machine.span_id != old_span

    run_machine(scenario, source=FakeSource(window=LOUD), pipeline=pipeline)


def test_skip_returns_to_listening():
    async def scenario(machine, parts):
        await start_listening(machine)
        await speak(machine)
        await wait_until(lambda: machine.turn_id == 1 and machine.state is TurnState.LISTENING)
        assert not machine.paused
        assert machine.conversation.history == []
        assert parts.playback.urls == []

    run_machine(scenario, source=FakeSource(window=LOUD), pipeline=FakePipeline(Skip()))


def test_pause_and_unpause_commands_round_trip():
    pipeline = FakePipeline(Command("pause", "pause"), Command("unpause", "resume"))

    async def scenario(machine, parts):
        await start_listening(machine)
        await speak(machine)
        await wait_until(lambda: machine.paused)
        assert machine.state is TurnState.LISTENING
        assert machine.span_open
        assert "Paused" in parts.statuses[-1].message

        await speak(machine)
        await wait_until(lambda: machine.turn_id == 2 and not machine.paused
                         and machine.state is TurnState.LISTENING)
        assert parts.playback.urls == []

    run_machine(scenario, source=FakeSource(window=LOUD), pipeline=pipeline)


def test_server_paused_sets_paused_flag():
    async def scenario(machine, parts):
        await start_listening(machine)
        await speak(machine)
        await wait_until(lambda: machine.paused and machine.state is TurnState.LISTENING)
        assert machine.conversation.history == []

    run_machine(scenario, source=FakeSource(window=LOUD), pipeline=FakePipeline(ServerPaused("hello")))


def test_failure_returns_to_listening_with_error_status():
    error = NetworkError("HTTP 500", status_code=500)

    async def scenario(machine, parts):
        await start_listening(machine)
        await speak(machine)
        await wait_until(lambda: machine.stats["failed"] == 1)
        assert machine.state is TurnState.LISTENING
        assert machine.span_open
        assert parts.statuses[-1].level == "error"
        assert parts.statuses[-1].message == "Couldn't reach VERA, listening again"

    run_machine(scenario, source=FakeSource(window=LOUD),
                pipeline=FakePipeline(Failed(error=error, phase="transcribe")))


def test_unexpected_pipeline_exception_is_treated_as_failure():
    async def scenario(machine, parts):
        await start_listening(machine)
        await speak(machine)
        await wait_until(lambda: machine.stats["failed"] == 1)
        assert machine.state is TurnState.LISTENING

    run_machine(scenario, source=FakeSource(window=LOUD),
                pipeline=FakePipeline(ProtocolError("bad body")))


def test_disable_while_processing_discards_late_result():
    pipeline = FakePipeline(Reply(transcript="hi", reply="hello", audio_url="/a.wav"))

    async def scenario(machine, parts):
        pipeline.gate = asyncio.Event()
        await start_listening(machine)
        await speak(machine)
        await wait_until(lambda: machine.state is TurnState.PROCESSING)

        machine.disable()
        await wait_until(lambda: machine.state is TurnState.IDLE)
        pipeline.gate.set()
        await wait_until(lambda: machine.stats["discarded_results"] == 1)

        assert machine.state is TurnState.IDLE
        assert not machine.span_open
        assert parts.playback.urls == []
        assert machine.conversation.history == []

        await start_listening(machine)
        assert machine.stats["spans_opened"] == 2

    run_machine(scenario, source=FakeSource(window=LOUD), pipeline=pipeline)


def test_disable_while_speaking_stops_playback():
    playback = FakePlayback()

    async def scenario(machine, parts):
        playback.gate = asyncio.Event()
        await start_listening(machine)
        await speak(machine)
        await wait_until(lambda: machine.state is TurnState.SPEAKING)

        machine.disable()
        await wait_until(lambda: machine.state is TurnState.IDLE)
        assert playback.stopped >= 1

        playback.gate.set()
        await asyncio.sleep(0.05)
        assert machine.state is TurnState.IDLE
        assert not machine.span_open

    run_machine(scenario, source=FakeSource(window=LOUD),
                pipeline=FakePipeline(Reply(transcript="hi", reply="hello", audio_url="/a.wav")),
                playback=playback)


def test_disable_right_after_reply_keeps_playback_from_starting():
    playback = FakePlayback()
    pipeline = FakePipeline()

    async def scenario(machine, parts):
        pipeline.gate = asyncio.Event()
        await start_listening(machine)
        await speak(machine)
        await wait_until(lambda: machine.state is TurnState.PROCESSING)

        reply = Reply(transcript="hi", reply="hello", audio_url="/a.wav")
        await machine.dispatch(PhaseResult(machine.turn_id, reply))
        await machine.dispatch(DisableListening())
        await asyncio.sleep(0.05)

        assert machine.state is TurnState.IDLE
        assert playback.stopped == 1
        assert playback.urls == []

    run_machine(scenario, source=FakeSource(window=LOUD), pipeline=pipeline, playback=playback)


def test_playback_error_leaves_speaking_and_waits_for_settle():
    async def scenario(machine, parts):
        await start_listening(machine)
        await speak(machine)
        await wait_until(lambda: any(s.level == "error" for s in parts.statuses))

        error = next(s for s in parts.statuses if s.level == "error")
        assert error.state is TurnState.LISTENING
        assert error.message == user_message(PlaybackError("bad audio"))
        assert machine.state is TurnState.LISTENING
        assert not machine.span_open

        await wait_until(lambda: machine.span_open)
        assert machine.stats["spans_opened"] == 2
        assert parts.statuses[-1].level == "info"

    run_machine(scenario, source=FakeSource(window=LOUD),
                pipeline=FakePipeline(Reply(transcript="hi", reply="hello", audio_url="/a.wav")),
                playback=FakePlayback(settle=0.2, error=PlaybackError("bad audio")))


def test_disable_after_playback_error_keeps_span_closed():
    async def scenario(machine, parts):
        await start_listening(machine)
        await speak(machine)
        await wait_until(lambda: any(s.level == "error" for s in parts.statuses))

        machine.disable()
        await wait_until(lambda: machine.state is TurnState.IDLE)
        await asyncio.sleep(0.25)
        assert machine.state is TurnState.IDLE
        assert not machine.span_open

    run_machine(scenario, source=FakeSource(window=LOUD),
                pipeline=FakePipeline(Reply(transcript="hi", reply="hello", audio_url="/a.wav")),
                playback=FakePlayback(settle=0.2, error=PlaybackError("bad audio")))


def test_device_error_leaves_machine_idle():
    async def scenario(machine, parts):
        machine.enable()
        await wait_until(lambda: parts.statuses)
        assert machine.state is TurnState.IDLE
        assert not machine.span_open
        assert parts.statuses[-1].level == "error"
        assert parts.statuses[-1].message == "Microphone blocked or unavailable"

    run_machine(scenario, source=FakeSource(fail=True))


def test_request_pause_uses_command_endpoint():
    async def scenario(machine, parts):
        await start_listening(machine)
        assert await machine.request_pause(True)
        await wait_until(lambda: machine.paused)
        assert parts.pipeline.client.commands == [("sess-1", "pause")]

        assert await machine.request_pause(False)
        await wait_until(lambda: not machine.paused)
        assert parts.pipeline.client.commands[-1] == ("sess-1", "unpause")
        assert machine.state is TurnState.LISTENING

    run_machine(scenario)


def test_request_pause_failure_keeps_flag():
    async def scenario(machine, parts):
        await start_listening(machine)
        assert not await machine.request_pause(True)
        await asyncio.sleep(0.02)
        assert not machine.paused
        assert parts.statuses[-1].level == "error"

    run_machine(scenario, pipeline=FakePipeline(client=FakeCommandClient(fail=True)))
