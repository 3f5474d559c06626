#!/usr/bin/env python3
"""
Test script for Light Tracker

Generates synthetic brightness traces and video frames and tests the
histogram, run segmentation and region sampling.
"""

import cv2
import numpy as np
import sys
import pytest

from light_tracker import (
    OFF, ON, LightTracker, NoSamples, Sample, Signal,
    build_brightness_histogram, read_samples, segment_states
)


def generate_brightness_trace(
    runs: list,
    on_level: int = 200,
    off_level: int = 20,
    start_frame: int = 0
) -> list:
    """
    Generate one brightness sample per frame for a sequence of runs.

    Args:
        runs: List of (state, duration) tuples
        on_level: Brightness of a lit frame
        off_level: Brightness of a dark frame
        start_frame: Index of the first frame

    Returns:
        List of samples
    """
    samples = []
    frame = start_frame
    for state, duration in runs:
        level = on_level if state == ON else off_level
        for _ in range(duration):
            samples.append(Sample(frame=frame, brightness=level))
            frame += 1
    return samples


def generate_frame(
    width: int = 8,
    height: int = 8,
    bgr: tuple = (0, 0, 0),
    patch: tuple = None,
    patch_bgr: tuple = (255, 255, 255)
) -> np.ndarray:
    """
    Generate a solid BGR frame, optionally with a rectangular patch.

    Args:
        width: Frame width in pixels
        height: Frame height in pixels
        bgr: Background colour
        patch: (x0, y0, x1, y1) pixel rectangle of the patch
        patch_bgr: Patch colour

    Returns:
        HxWx3 uint8 frame
    """
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:, :] = bgr
    if patch is not None:
        x0, y0, x1, y1 = patch
        frame[y0:y1, x0:x1] = patch_bgr
    return frame


def test_histogram_conservation():
    """Histogram counts add up to the number of samples."""
    samples = generate_brightness_trace([(ON, 3), (OFF, 2), (ON, 9), (OFF, 7)])
    histogram = build_brightness_histogram(samples)

    assert len(histogram.counts) == 256
    assert sum(histogram.counts) == len(samples)
    assert histogram.counts[200] == 12
    assert histogram.counts[20] == 9


def test_histogram_mean_truncates():
    """Mean brightness uses truncating integer division."""
    samples = [Sample(frame=0, brightness=10), Sample(frame=1, brightness=11)]
    assert build_brightness_histogram(samples).mean_brightness == 10

    samples = generate_brightness_trace([(ON, 1), (OFF, 3)], on_level=100, off_level=0)
    assert build_brightness_histogram(samples).mean_brightness == 25


def test_histogram_no_samples():
    """An empty trace is reported, not divided by zero."""
    with pytest.raises(NoSamples) as excinfo:
        build_brightness_histogram([])
    assert excinfo.value.stage == 'histogram'


def test_histogram_rejects_out_of_range():
    with pytest.raises(ValueError):
        build_brightness_histogram([Sample(frame=0, brightness=256)])
    with pytest.raises(ValueError):
        build_brightness_histogram([Sample(frame=0, brightness=-1)])


def test_segmentation_totality():
    """Run durations cover the whole frame span with no gaps."""
    runs = [(OFF, 4), (ON, 3), (OFF, 2), (ON, 9), (OFF, 6), (ON, 3), (OFF, 20)]
    samples = generate_brightness_trace(runs, start_frame=100)
    histogram = build_brightness_histogram(samples)
    signals = segment_states(samples, histogram.mean_brightness)

    span = samples[-1].frame - samples[0].frame + 1
    assert sum(s.duration for s in signals) == span
    assert signals == [Signal(state=s, duration=d) for s, d in runs]

    for previous, current in zip(signals, signals[1:]):
        assert previous.state != current.state


def test_segmentation_flushes_final_run():
    """
    The run in progress at the end of the trace is emitted.

    Emitting runs only on state changes would lose the trailing gap.
    """
    samples = generate_brightness_trace([(ON, 3), (OFF, 2), (ON, 3), (OFF, 20)])
    signals = segment_states(samples, 100)

    assert signals[-1] == Signal(state=OFF, duration=20)
    assert len(signals) == 4


def test_segmentation_starting_lit():
    """A trace starting with the light on has no zero length off run."""
    samples = generate_brightness_trace([(ON, 5), (OFF, 5)])
    signals = segment_states(samples, 100)

    assert signals == [Signal(state=ON, duration=5), Signal(state=OFF, duration=5)]
    assert all(s.duration >= 1 for s in signals)


def test_segmentation_constant_trace():
    """A constant trace is a single run with no transitions."""
    samples = generate_brightness_trace([(ON, 50)], on_level=128)
    histogram = build_brightness_histogram(samples)
    signals = segment_states(samples, histogram.mean_brightness)

    assert histogram.mean_brightness == 128
    assert signals == [Signal(state=ON, duration=50)]


def test_segmentation_threshold_is_inclusive():
    """Samples exactly at the mean count as lit."""
    samples = [Sample(frame=0, brightness=10), Sample(frame=1, brightness=50),
               Sample(frame=2, brightness=10)]
    signals = segment_states(samples, 50)

    assert signals == [Signal(state=OFF, duration=1), Signal(state=ON, duration=1),
                       Signal(state=OFF, duration=1)]


def test_segmentation_rejects_unordered_frames():
    samples = [Sample(frame=3, brightness=10), Sample(frame=3, brightness=200)]
    with pytest.raises(ValueError):
        segment_states(samples, 100)


def test_segmentation_skipped_frames():
    """Durations follow frame indexes, not sample counts."""
    samples = [Sample(frame=0, brightness=200), Sample(frame=4, brightness=10),
               Sample(frame=6, brightness=200)]
    signals = segment_states(samples, 100)

    assert signals == [Signal(state=ON, duration=4), Signal(state=OFF, duration=2),
                       Signal(state=ON, duration=1)]


def test_measure_region():
    """Only the selected region contributes to the brightness."""
    frame = generate_frame(patch=(2, 2, 6, 6), patch_bgr=(240, 0, 0))

    centre = LightTracker(region=(0.25, 0.25, 0.75, 0.75))
    assert centre.measure_brightness(frame) == 240

    whole = LightTracker()
    assert whole.measure_brightness(frame) == 60

    corner = LightTracker(region=(0.0, 0.0, 0.25, 0.25))
    assert corner.measure_brightness(frame) == 0


def test_measure_channels():
    frame = generate_frame(bgr=(10, 20, 30))

    assert LightTracker(channel='blue').measure_brightness(frame) == 10
    assert LightTracker(channel='green').measure_brightness(frame) == 20
    assert LightTracker(channel='red').measure_brightness(frame) == 30

    gray = generate_frame(bgr=(100, 100, 100))
    assert LightTracker(channel='luma').measure_brightness(gray) == 100


def test_measure_invalid_settings():
    with pytest.raises(ValueError):
        LightTracker(channel='alpha')

    for region in [(0.0, 0.0, 2.0, 2.0), (-1.0, 0.0, 1.0, 1.0),
                   (0.5, 0.5, 0.5, 0.9), (0.0, 0.8, 1.0, 0.2)]:
        with pytest.raises(ValueError):
            LightTracker(region=region)

    # Valid fractions, but less than one pixel wide on a small frame
    tracker = LightTracker(region=(0.0, 0.0, 0.1, 0.1))
    with pytest.raises(ValueError):
        tracker.measure_brightness(generate_frame())


def test_measure_full_frame_white():
    """The widest valid region averages the whole frame."""
    frame = generate_frame(bgr=(255, 255, 255))
    assert LightTracker(region=(0.0, 0.0, 1.0, 1.0)).measure_brightness(frame) == 255


def test_sample_frame_range():
    """Frames outside start_frame..end_frame are skipped."""
    frames = [generate_frame(bgr=(i * 10, 0, 0)) for i in range(10)]

    tracker = LightTracker(start_frame=2, end_frame=5)
    samples = tracker.sample_frames(frames)
    assert [s.frame for s in samples] == [2, 3, 4, 5]
    assert [s.brightness for s in samples] == [20, 30, 40, 50]

    tracker = LightTracker(start_frame=7)
    samples = tracker.sample_frames(iter(frames))
    assert [s.frame for s in samples] == [7, 8, 9]

    assert len(LightTracker().sample_frames(frames)) == 10


def save_video(filename: str, frames: list, fps: float = 10.0):
    """Save BGR frames to an MJPG AVI file."""
    height, width = frames[0].shape[:2]
    fourcc = cv2.VideoWriter_fourcc(*"MJPG")
    writer = cv2.VideoWriter(filename, fourcc, fps, (width, height))
    if not writer.isOpened():
        pytest.skip("MJPG video writer not available")
    try:
        for frame in frames:
            writer.write(frame)
    finally:
        writer.release()


def test_sample_video(tmp_path):
    """Synthetic video file → samples, one per frame."""
    pattern = [0, 0, 1, 1, 1, 0, 1, 0, 0, 0]
    frames = [generate_frame(64, 48, bgr=(255, 255, 255) if lit else (0, 0, 0))
              for lit in pattern]

    test_file = str(tmp_path / 'lamp.avi')
    save_video(test_file, frames)

    samples = LightTracker().sample_video(test_file)

    assert [s.frame for s in samples] == list(range(len(pattern)))

    mean = build_brightness_histogram(samples).mean_brightness
    for lit, sample in zip(pattern, samples):
        if lit:
            assert sample.brightness >= mean
        else:
            assert sample.brightness < mean

    # Frame range applies to files too
    samples = LightTracker(start_frame=2, end_frame=4).sample_video(test_file)
    assert [s.frame for s in samples] == [2, 3, 4]

    output_file = str(tmp_path / 'lamp.json')
    LightTracker().process_video_file(test_file, output_file)
    assert [s.frame for s in read_samples(output_file)] == list(range(len(pattern)))


def test_sample_video_missing_file(tmp_path):
    with pytest.raises(IOError):
        LightTracker().sample_video(str(tmp_path / 'missing.avi'))


def test_sample_file_round_trip(tmp_path):
    """Samples written by the tracker are read back unchanged."""
    samples = generate_brightness_trace([(ON, 3), (OFF, 2), (ON, 9)], start_frame=30)
    output_file = str(tmp_path / 'samples.json')

    LightTracker()._output_samples(samples, output_file)

    assert read_samples(output_file) == samples


def main():
    """Run all tests."""
    print("\n")
    print("*" * 60)
    print("* Light Tracker Test Suite")
    print("*" * 60)
    print("\n")

    return pytest.main([__file__, '-v'])


if __name__ == '__main__':
    sys.exit(main())
