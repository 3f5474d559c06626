#!/usr/bin/env python3
"""
Light Tracker for Video Morse Decoder

This module samples the brightness of a fixed region of a video, frame by
frame, and turns the resulting brightness trace into timed on/off runs.
It outputs sample data in JSON lines format for the morse decoder.
"""

import cv2
import numpy as np
import json
import sys
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple


OFF = 0
ON = 1

# Channel index in OpenCV's BGR frame layout
CHANNELS = {'blue': 0, 'green': 1, 'red': 2}


class DecodeError(Exception):
    """Base class for failures of the decode pipeline."""

    stage = 'decode'

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class NoSamples(DecodeError):
    """Raised when there are no brightness samples to analyze."""

    stage = 'histogram'


@dataclass(frozen=True)
class Sample:
    """Brightness of the tracked region in one video frame."""
    frame: int       # Frame index
    brightness: int  # 0-255


@dataclass(frozen=True)
class Signal:
    """A maximal run of frames in the same light state."""
    state: int     # OFF or ON
    duration: int  # In frames


@dataclass(frozen=True)
class BrightnessHistogram:
    """Brightness frequency table and the derived on/off threshold."""
    counts: Tuple[int, ...]
    mean_brightness: int


def build_brightness_histogram(samples: List[Sample]) -> BrightnessHistogram:
    """
    Build a 256 bucket brightness histogram and its mean.

    The mean uses truncating integer division and is the threshold used
    by segment_states.

    Args:
        samples: Ordered brightness samples

    Returns:
        Histogram with mean brightness

    Raises:
        NoSamples: If there are no samples
    """
    if not samples:
        raise NoSamples("no brightness samples to analyze")

    values = np.array([s.brightness for s in samples], dtype=np.int64)
    if values.min() < 0 or values.max() > 255:
        raise ValueError(f"Brightness out of range 0-255: "
                         f"{values.min()}..{values.max()}")

    counts = np.bincount(values, minlength=256)
    mean = int(np.dot(np.arange(256), counts)) // int(counts.sum())

    return BrightnessHistogram(
        counts=tuple(int(c) for c in counts),
        mean_brightness=mean
    )


def segment_states(samples: List[Sample], mean_brightness: int) -> List[Signal]:
    """
    Collapse the brightness trace into alternating on/off runs.

    The light is assumed off before the first sample. The run still in
    progress after the last sample is emitted too, so the durations add up
    to the frame span of the samples.

    Args:
        samples: Ordered brightness samples
        mean_brightness: Samples at or above this level are ON

    Returns:
        List of signals, never two with the same state in a row
    """
    signals = []
    if not samples:
        return signals

    last_state = OFF
    run_start = samples[0].frame
    last_frame = None

    for sample in samples:
        if last_frame is not None and sample.frame <= last_frame:
            raise ValueError(f"Frame indexes must increase: {sample.frame} "
                             f"follows {last_frame}")
        last_frame = sample.frame

        state = ON if sample.brightness >= mean_brightness else OFF
        if state != last_state:
            duration = sample.frame - run_start
            # First sample already on: no off run before it
            if duration > 0:
                signals.append(Signal(state=last_state, duration=duration))
            run_start = sample.frame
        last_state = state

    signals.append(Signal(state=last_state, duration=last_frame + 1 - run_start))

    return signals


def read_samples(input_path: str) -> List[Sample]:
    """
    Read brightness samples from a JSON lines file.

    Args:
        input_path: Path to JSON lines file written by the light tracker

    Returns:
        List of samples
    """
    samples = []
    with open(input_path, 'r') as f:
        for line in f:
            if line.strip():
                data = json.loads(line)
                samples.append(Sample(
                    frame=data['frame'],
                    brightness=data['brightness']
                ))
    return samples


class LightTracker:
    """
    Samples the brightness of a screen region across video frames.

    One sample is taken per frame: the region is cropped, a single colour
    channel is selected and averaged to an integer brightness.
    """

    def __init__(
        self,
        region: Tuple[float, float, float, float] = (0.0, 0.0, 1.0, 1.0),
        start_frame: int = 0,
        end_frame: int = -1,
        channel: str = 'blue',
        debug: bool = False
    ):
        """
        Initialize the light tracker.

        Args:
            region: (x0, y0, x1, y1) of the area to examine, as 0.0-1.0
                fractions of frame width and height
            start_frame: First frame to sample (0 = first frame)
            end_frame: Last frame to sample (-1 = last frame)
            channel: Colour channel to sample: blue, green, red or luma
            debug: Enable debug output
        """
        if channel not in CHANNELS and channel != 'luma':
            raise ValueError(f"Unsupported channel: {channel}")

        x0, y0, x1, y1 = region
        if not (0.0 <= x0 < x1 <= 1.0 and 0.0 <= y0 < y1 <= 1.0):
            raise ValueError(f"Region must lie within 0.0-1.0 with x0 < x1 "
                             f"and y0 < y1: {region}")

        self.region = region
        self.start_frame = start_frame
        self.end_frame = end_frame
        self.channel = channel
        self.debug = debug

    def process_video_file(self, video_path: str, output_path: Optional[str] = None):
        """
        Process a video file and output brightness samples.

        Args:
            video_path: Path to input video (anything OpenCV can read)
            output_path: Path to output JSON lines file (stdout if None)
        """
        samples = self.sample_video(video_path)
        self._output_samples(samples, output_path)

    def sample_video(self, video_path: str) -> List[Sample]:
        """
        Sample every frame of a video file.

        Args:
            video_path: Path to input video

        Returns:
            List of samples
        """
        capture = cv2.VideoCapture(video_path)
        if not capture.isOpened():
            raise IOError(f"Failed to open video file: {video_path}")

        if self.debug:
            fps = capture.get(cv2.CAP_PROP_FPS)
            n_frames = int(capture.get(cv2.CAP_PROP_FRAME_COUNT))
            print(f"{video_path}: {n_frames} frames at {fps:.2f} fps",
                  file=sys.stderr)

        try:
            samples = self.sample_frames(self._read_frames(capture))
        finally:
            capture.release()

        return samples

    def sample_frames(self, frames: Iterable[np.ndarray]) -> List[Sample]:
        """
        Sample a sequence of BGR frames.

        Frames before start_frame are skipped, reading stops after end_frame.

        Args:
            frames: Frames in display order, as HxWx3 uint8 arrays

        Returns:
            List of samples with their frame indexes
        """
        samples = []

        for frame_index, frame in enumerate(frames):
            if frame_index < self.start_frame:
                continue
            if self.end_frame != -1 and frame_index > self.end_frame:
                break

            samples.append(Sample(
                frame=frame_index,
                brightness=self.measure_brightness(frame)
            ))

        if self.debug:
            print(f"Sampled {len(samples)} frames", file=sys.stderr)

        return samples

    def measure_brightness(self, frame: np.ndarray) -> int:
        """
        Average brightness of the tracked region in one frame.

        Args:
            frame: HxWx3 BGR frame

        Returns:
            Brightness 0-255
        """
        height, width = frame.shape[:2]
        x0, y0, x1, y1 = self.region
        x0, x1 = int(width * x0), int(width * x1)
        y0, y1 = int(height * y0), int(height * y1)

        if x1 <= x0 or y1 <= y0:
            raise ValueError(f"Empty region {self.region} for {width}x{height} frame")

        if self.channel == 'luma':
            plane = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        else:
            plane = frame[:, :, CHANNELS[self.channel]]

        area = plane[y0:y1, x0:x1].astype(np.int64)

        # Mean of per-row means, both truncated
        row_means = area.sum(axis=1) // (x1 - x0)
        brightness = int(row_means.sum()) // (y1 - y0)

        return min(max(brightness, 0), 255)

    def _read_frames(self, capture) -> Iterable[np.ndarray]:
        while True:
            ok, frame = capture.read()
            if not ok:
                break
            yield frame

    def _output_samples(self, samples: List[Sample], output_path: Optional[str] = None):
        """
        Output samples in JSON lines format.

        Args:
            samples: List of samples to output
            output_path: Path to output file (stdout if None)
        """
        if output_path:
            with open(output_path, 'w') as f:
                for sample in samples:
                    json_obj = {
                        'frame': sample.frame,
                        'brightness': sample.brightness
                    }
                    f.write(json.dumps(json_obj) + '\n')
        else:
            for sample in samples:
                json_obj = {
                    'frame': sample.frame,
                    'brightness': sample.brightness
                }
                print(json.dumps(json_obj))


def main():
    """Command line interface for light tracker."""
    import argparse

    parser = argparse.ArgumentParser(
        description='Sample the brightness of a video region frame by frame'
    )
    parser.add_argument(
        'input',
        help='Input video file (MPEG4, AVI, FLV etc)'
    )
    parser.add_argument(
        '-o', '--output',
        help='Output JSON lines file (default: stdout)'
    )
    parser.add_argument(
        '--start-frame',
        type=int,
        default=0,
        help='First frame to sample, 30 = skip 1 second at 30fps (default: 0)'
    )
    parser.add_argument(
        '--end-frame',
        type=int,
        default=-1,
        help='Last frame to sample, -1 = end of video (default: -1)'
    )
    parser.add_argument(
        '--region',
        type=float,
        nargs=4,
        metavar=('X0', 'Y0', 'X1', 'Y1'),
        default=[0.0, 0.0, 1.0, 1.0],
        help='Area to examine as fractions 0.0-1.0 of the frame '
             '(default: 0 0 1 1)'
    )
    parser.add_argument(
        '--channel',
        choices=['blue', 'green', 'red', 'luma'],
        default='blue',
        help='Colour channel to sample (default: blue)'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug output'
    )

    args = parser.parse_args()

    tracker = LightTracker(
        region=tuple(args.region),
        start_frame=args.start_frame,
        end_frame=args.end_frame,
        channel=args.channel,
        debug=args.debug
    )

    try:
        tracker.process_video_file(args.input, args.output)
    except (IOError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
