#!/usr/bin/env python3
"""
Morse Code Decoder

This module decodes morse code light pulses into ASCII text. It consumes JSON
output from the light tracker, splits the brightness trace into on/off runs,
learns the dot/dash and gap lengths from peaks in the run length histograms,
and decodes the morse patterns into readable text.
"""

import numpy as np
import json
import math
import sys
from dataclasses import dataclass
from typing import List, Dict, TextIO, Tuple

from light_tracker import (
    OFF, ON, DecodeError, Sample, Signal,
    build_brightness_histogram, read_samples, segment_states
)


GAUSSIAN_WINDOW_SIZE = 3
OFF_PEAK_COUNT = 3
ON_PEAK_COUNT = 2

CHAR_SEPARATOR = ' '
WORD_SEPARATOR = ' | '

MORSE_SYMBOLS = [
    ('.-', 'A'), ('-...', 'B'), ('-.-.', 'C'), ('-..', 'D'), ('.', 'E'),
    ('..-.', 'F'), ('--.', 'G'), ('....', 'H'), ('..', 'I'), ('.---', 'J'),
    ('-.-', 'K'), ('.-..', 'L'), ('--', 'M'), ('-.', 'N'), ('---', 'O'),
    ('.--.', 'P'), ('--.-', 'Q'), ('.-.', 'R'), ('...', 'S'), ('-', 'T'),
    ('..-', 'U'), ('...-', 'V'), ('.--', 'W'), ('-..-', 'X'), ('-.--', 'Y'),
    ('--..', 'Z'),
    ('-----', '0'), ('.----', '1'), ('..---', '2'), ('...--', '3'), ('....-', '4'),
    ('.....', '5'), ('-....', '6'), ('--...', '7'), ('---..', '8'), ('----.', '9'),
    ('---...', ':'), ('-....-', '-'), ('.-.-.-', '.'),
]

# Keyed by the whole pattern, so lookup never depends on table order
MORSE_CODE_DICT = dict(MORSE_SYMBOLS)


class InsufficientSignalVariation(DecodeError):
    """Raised when the run lengths do not show enough distinct timings."""

    stage = 'thresholds'

    def __init__(self, off_peaks: int, on_peaks: int):
        self.off_peaks = off_peaks
        self.on_peaks = on_peaks
        super().__init__(
            f"found {off_peaks} of {OFF_PEAK_COUNT} off-time peaks and "
            f"{on_peaks} of {ON_PEAK_COUNT} on-time peaks; "
            f"the signal has too little timing variety to decode"
        )


class AmbiguousSymbol(DecodeError):
    """Raised in strict mode for a morse pattern with no table entry."""

    stage = 'symbols'

    def __init__(self, pattern: str):
        self.pattern = pattern
        super().__init__(f"unknown morse pattern: {pattern}")


@dataclass(frozen=True)
class Thresholds:
    """Run length cut points, in frames."""
    off_thresholds: Tuple[int, int]  # Character gap, word gap
    on_threshold: int                # Dash

    def __str__(self):
        return (f"Char gap: >={self.off_thresholds[0]}, "
                f"Word gap: >={self.off_thresholds[1]}, "
                f"Dash: >={self.on_threshold} frames")


@dataclass(frozen=True)
class DecodeReport:
    """Everything learned while decoding one brightness trace."""
    frame_hist: Tuple[int, ...]
    frame_hist_mean: int
    hist_off: Dict[int, int]
    hist_on: Dict[int, int]
    off_time_peaks: Tuple[int, ...]
    on_time_peaks: Tuple[int, ...]
    off_thresholds: Tuple[int, int]
    on_thresholds: Tuple[int]
    morse: str
    message: str

    def to_dict(self) -> Dict:
        return {
            'frame_hist': list(self.frame_hist),
            'frame_hist_mean': self.frame_hist_mean,
            'hist_off': {str(k): v for k, v in self.hist_off.items()},
            'hist_on': {str(k): v for k, v in self.hist_on.items()},
            'off_time_peaks': list(self.off_time_peaks),
            'off_thresholds': list(self.off_thresholds),
            'on_time_peaks': list(self.on_time_peaks),
            'on_thresholds': list(self.on_thresholds),
            'morse': self.morse,
            'message': self.message,
        }


class JsonReportSink:
    """Writes each decode report as one JSON object to a text stream."""

    def __init__(self, stream: TextIO):
        self.stream = stream

    def write(self, report: DecodeReport):
        self.stream.write(json.dumps(report.to_dict()) + '\n')
        self.stream.flush()


def gaussian(x: float, a: float = 1.0) -> float:
    """Gaussian kernel weight at offset x, with sqrt(a/pi) peak height."""
    return math.sqrt(a / math.pi) * math.exp(-a * x * x)


def duration_histograms(signals: List[Signal]) -> Tuple[Dict[int, int], Dict[int, int]]:
    """
    Count how often each run length occurs, separately for off and on runs.

    Args:
        signals: Segmented runs

    Returns:
        Tuple of (off histogram, on histogram), keys in ascending order
    """
    off_hist: Dict[int, int] = {}
    on_hist: Dict[int, int] = {}

    for sig in signals:
        hist = on_hist if sig.state == ON else off_hist
        hist[sig.duration] = hist.get(sig.duration, 0) + 1

    return dict(sorted(off_hist.items())), dict(sorted(on_hist.items()))


def smooth_histogram(hist: Dict[int, int], window_size: int = GAUSSIAN_WINDOW_SIZE) -> np.ndarray:
    """
    Gaussian smoothed, dense version of a sparse duration histogram.

    Args:
        hist: Duration to count mapping
        window_size: Kernel radius in frames

    Returns:
        Array indexed by duration, 0 to the largest duration
    """
    dense = np.zeros(max(hist) + 1)
    for duration, count in hist.items():
        dense[duration] = count

    kernel = np.array([gaussian(j) for j in range(-window_size, window_size + 1)])

    # Zero padding at the edges is the same as skipping out of range terms
    smoothed = np.convolve(dense, kernel, mode='full')
    return smoothed[window_size:window_size + len(dense)]


def find_duration_peaks(
    hist: Dict[int, int],
    count: int,
    window_size: int = GAUSSIAN_WINDOW_SIZE
) -> List[int]:
    """
    Find the most common run lengths in a duration histogram.

    The histogram is smoothed and every point where the curve stops rising
    and starts falling is a candidate. A curve still rising at its right edge
    has a candidate there too. Candidates are ranked by smoothed height.

    Example, for count=3:
        hist = {1: 4, 8: 4, 30: 2}  ->  [1, 8, 30]

    Args:
        hist: Duration to count mapping
        count: Number of peaks wanted
        window_size: Gaussian smoothing radius

    Returns:
        Up to count durations, highest peak first (not sorted by duration)
    """
    if not hist or count <= 0:
        return []

    smoothed = smooth_histogram(hist, window_size)

    candidates = []
    last_direction = 0
    direction = 0
    for i in range(1, len(smoothed)):
        direction = int(np.sign(smoothed[i] - smoothed[i - 1]))
        if last_direction >= 0 and direction == -1:
            candidates.append(i - 1)
        last_direction = direction

    if direction > 0:
        candidates.append(len(smoothed) - 1)

    # Stable sort keeps shorter durations first among equal heights
    candidates.sort(key=lambda d: -smoothed[d])

    return candidates[:count]


def derive_thresholds(off_peaks: List[int], on_peaks: List[int]) -> Thresholds:
    """
    Place cut points half way between neighbouring peaks.

    Uses the peak durations themselves, not their smoothed heights.

    Args:
        off_peaks: Off-time peaks, any order
        on_peaks: On-time peaks, any order

    Returns:
        Thresholds

    Raises:
        InsufficientSignalVariation: If there are too few peaks
    """
    if len(off_peaks) < OFF_PEAK_COUNT or len(on_peaks) < ON_PEAK_COUNT:
        raise InsufficientSignalVariation(len(off_peaks), len(on_peaks))

    off = sorted(off_peaks)
    on = sorted(on_peaks)

    return Thresholds(
        off_thresholds=((off[0] + off[1]) // 2, (off[1] + off[2]) // 2),
        on_threshold=(on[0] + on[1]) // 2
    )


def assemble_morse(signals: List[Signal], thresholds: Thresholds) -> str:
    """
    Convert runs into a morse token stream.

    A run exactly as long as a threshold falls in the longer class. Off runs
    before the first and after the last pulse are idle time, not separators.

    Args:
        signals: Segmented runs
        thresholds: Cut points

    Returns:
        Dots and dashes, with ' ' between characters and ' | ' between words
    """
    pulse_indexes = [i for i, sig in enumerate(signals) if sig.state == ON]
    if not pulse_indexes:
        return ''

    char_gap, word_gap = thresholds.off_thresholds
    morse = []

    for sig in signals[pulse_indexes[0]:pulse_indexes[-1] + 1]:
        if sig.state == OFF:
            if sig.duration < char_gap:
                # Same character continues
                pass
            elif sig.duration < word_gap:
                morse.append(CHAR_SEPARATOR)
            else:
                morse.append(WORD_SEPARATOR)
        else:
            if sig.duration < thresholds.on_threshold:
                morse.append('.')
            else:
                morse.append('-')

    return ''.join(morse)


def decode_morse(morse: str, strict: bool = False, debug: bool = False) -> str:
    """
    Decode a morse token stream into text.

    Args:
        morse: Token stream from assemble_morse
        strict: Raise on unknown patterns instead of marking them
        debug: Enable debug output

    Returns:
        Decoded text, unknown patterns shown as [pattern]
    """
    words = []

    for word in morse.split(WORD_SEPARATOR.strip()):
        decoded_chars = []
        for pattern in word.split():
            if pattern in MORSE_CODE_DICT:
                decoded_chars.append(MORSE_CODE_DICT[pattern])
            elif strict:
                raise AmbiguousSymbol(pattern)
            else:
                if debug:
                    print(f"  Unknown pattern: {pattern}", file=sys.stderr)
                decoded_chars.append('[' + pattern + ']')
        if decoded_chars:
            words.append(''.join(decoded_chars))

    return ' '.join(words)


class MorseDecoder:
    """
    Decodes a brightness trace of a flashing light into text.

    Makes no assumption about keying speed or frame rate: the dot, dash and
    gap lengths are all learned from the trace itself.
    """

    def __init__(
        self,
        gaussian_window: int = GAUSSIAN_WINDOW_SIZE,
        strict: bool = False,
        debug: bool = False
    ):
        """
        Initialize the morse decoder.

        Args:
            gaussian_window: Radius of the histogram smoothing kernel
            strict: Fail on unknown morse patterns instead of marking them
            debug: Enable debug output
        """
        if gaussian_window < 0:
            raise ValueError(f"Invalid gaussian window: {gaussian_window}")

        self.gaussian_window = gaussian_window
        self.strict = strict
        self.debug = debug

    def decode_from_file(self, input_path: str, sink: JsonReportSink):
        """
        Decode morse code from a JSON lines file.

        Args:
            input_path: Path to input JSON lines file (from light tracker)
            sink: Where to write the decode report
        """
        samples = read_samples(input_path)
        report = self.decode_samples(samples)
        sink.write(report)

    def decode_samples(self, samples: List[Sample]) -> DecodeReport:
        """
        Decode a brightness trace.

        Args:
            samples: Brightness samples ordered by frame

        Returns:
            Decode report
        """
        histogram = build_brightness_histogram(samples)
        signals = segment_states(samples, histogram.mean_brightness)

        if self.debug:
            print(f"{len(samples)} samples, mean brightness "
                  f"{histogram.mean_brightness}, {len(signals)} runs",
                  file=sys.stderr)

        off_hist, on_hist = duration_histograms(signals)

        off_peaks = sorted(find_duration_peaks(off_hist, OFF_PEAK_COUNT, self.gaussian_window))
        on_peaks = sorted(find_duration_peaks(on_hist, ON_PEAK_COUNT, self.gaussian_window))

        if self.debug:
            print(f"  Off peaks: {off_peaks}, on peaks: {on_peaks}", file=sys.stderr)

        thresholds = derive_thresholds(off_peaks, on_peaks)

        if self.debug:
            print(f"  Thresholds: {thresholds}", file=sys.stderr)

        morse = assemble_morse(signals, thresholds)
        message = decode_morse(morse, strict=self.strict, debug=self.debug)

        return DecodeReport(
            frame_hist=histogram.counts,
            frame_hist_mean=histogram.mean_brightness,
            hist_off=off_hist,
            hist_on=on_hist,
            off_time_peaks=tuple(off_peaks),
            on_time_peaks=tuple(on_peaks),
            off_thresholds=thresholds.off_thresholds,
            on_thresholds=(thresholds.on_threshold,),
            morse=morse,
            message=message
        )


def main():
    """Command line interface for morse decoder."""
    import argparse

    parser = argparse.ArgumentParser(
        description='Decode morse code from light tracker JSON output'
    )
    parser.add_argument(
        'input',
        help='Input JSON lines file from light tracker'
    )
    parser.add_argument(
        '-o', '--output',
        help='Output JSON report file (default: stdout)'
    )
    parser.add_argument(
        '--window',
        type=int,
        default=GAUSSIAN_WINDOW_SIZE,
        help=f'Gaussian smoothing window size (default: {GAUSSIAN_WINDOW_SIZE})'
    )
    parser.add_argument(
        '--strict',
        action='store_true',
        help='Fail on unknown morse patterns'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug output'
    )

    args = parser.parse_args()

    # Create decoder
    decoder = MorseDecoder(
        gaussian_window=args.window,
        strict=args.strict,
        debug=args.debug
    )

    try:
        if args.output:
            with open(args.output, 'w') as f:
                decoder.decode_from_file(args.input, JsonReportSink(f))
        else:
            decoder.decode_from_file(args.input, JsonReportSink(sys.stdout))
    except DecodeError as e:
        print(f"Error ({e.stage}): {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
