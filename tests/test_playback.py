import random

import numpy as np
import pytest

from conftest import FakeOutput, make_clip
from support_agent.models.realtime import AudioClip
from support_agent.services.audio_devices import SoundDeviceOutput
from support_agent.services.playback import PlaybackScheduler


def test_back_to_back_clips_do_not_overlap():
    output = FakeOutput()
    scheduler = PlaybackScheduler(output)

    first = scheduler.schedule(make_clip(0.5))
    second = scheduler.schedule(make_clip(0.25))

    assert first == 0.0
    assert second == pytest.approx(0.5)
    assert scheduler.next_start_time == pytest.approx(0.75)
    assert scheduler.active_count == 2


def test_late_clip_starts_now_not_in_the_past():
    output = FakeOutput()
    scheduler = PlaybackScheduler(output)
    scheduler.schedule(make_clip(0.1))

    output.now = 3.0
    start = scheduler.schedule(make_clip(0.1))

    assert start == 3.0


def test_random_schedules_never_overlap():
    rng = random.Random(3)
    output = FakeOutput()
    scheduler = PlaybackScheduler(output)
    windows = []
    for _ in range(100):
        output.now += rng.choice([0.0, 0.01, 0.2, 1.0])
        clip = make_clip(rng.choice([0.02, 0.1, 0.4]))
        start = scheduler.schedule(clip)
        assert start >= output.now
        windows.append((start, start + clip.duration_seconds))
    for (_, end), (next_start, _) in zip(windows, windows[1:]):
        assert next_start >= end - 1e-9


def test_interrupt_stops_everything_and_resets_cursor():
    output = FakeOutput()
    scheduler = PlaybackScheduler(output)
    scheduler.schedule(make_clip(1.0))
    scheduler.schedule(make_clip(1.0))
    scheduler.schedule(make_clip(1.0))
    output.now = 0.4

    stopped = scheduler.interrupt()

    assert stopped == 3
    assert all(handle.stopped for handle in output.handles)
    assert scheduler.active_count == 0
    assert scheduler.next_start_time == 0.4
    assert scheduler.schedule(make_clip(0.2)) == 0.4


def test_interrupt_then_schedule_starts_now_from_any_cursor():
    output = FakeOutput()
    scheduler = PlaybackScheduler(output)
    for _ in range(5):
        scheduler.schedule(make_clip(2.0))
    output.now = 1.25

    scheduler.interrupt()

    assert scheduler.schedule(make_clip(0.1)) == 1.25


def test_natural_end_leaves_active_set():
    output = FakeOutput()
    scheduler = PlaybackScheduler(output)
    scheduler.schedule(make_clip(0.1))

    output.handles[0].finish()

    assert scheduler.active_count == 0


def test_sound_device_output_mixes_on_frame_clock():
    ended = []
    output = SoundDeviceOutput(sample_rate=100, analyser_size=4)
    clip_samples = np.full(10, 0.5, dtype=np.float32)
    output.start(AudioClip(samples=clip_samples, sample_rate=100), at=0.05, on_ended=ended.append)

    block = output.render(10)
    assert block[:5].tolist() == [0.0] * 5
    assert block[5:].tolist() == [0.5] * 5
    assert output.current_time == pytest.approx(0.1)
    assert ended == []

    block = output.render(10)
    assert block[:5].tolist() == [0.5] * 5
    assert len(ended) == 1
    assert output.recent_samples().tolist() == [0.0] * 4


def test_sound_device_output_stop_silences_clip():
    output = SoundDeviceOutput(sample_rate=100)
    handle = output.start(AudioClip(samples=np.ones(50, dtype=np.float32), sample_rate=100), 0.0, lambda h: None)
    output.render(10)
    handle.stop()

    assert output.render(10).tolist() == [0.0] * 10


def test_scheduler_over_sound_device_output_interrupts():
    output = SoundDeviceOutput(sample_rate=100)
    scheduler = PlaybackScheduler(output)
    scheduler.schedule(AudioClip(samples=np.ones(30, dtype=np.float32), sample_rate=100))
    scheduler.schedule(AudioClip(samples=np.ones(30, dtype=np.float32), sample_rate=100))
    output.render(10)

    assert scheduler.interrupt() == 2
    assert scheduler.next_start_time == pytest.approx(0.1)
    assert output.render(10).tolist() == [0.0] * 10
