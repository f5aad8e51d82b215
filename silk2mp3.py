#!/usr/bin/env python3
"""
SILK to MP3 Converter
=====================
Converts SILK voice recordings (.silk) to mono MP3, either a single file
or recursively over a directory tree. Each .mp3 is written next to its
source; files whose .mp3 already exists are skipped, so a batch that
stopped halfway is resumed by simply running it again.

Decoding via pysilk (silk-python), encoding via lameenc (LAME bindings).
One bad file never aborts a directory run: it is logged and the walk
continues.

Dependencies:
    - silk-python, lameenc, numpy
    - Python 3.10+
"""

from __future__ import annotations

import argparse
import io
import logging
import math
import os
import sys
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol

import lameenc
import numpy as np
import pysilk

__version__ = "0.1.0"

# ── Configuration ────────────────────────────────────────────────────────────

SOURCE_EXTENSION = ".silk"
TARGET_EXTENSION = ".mp3"

SAMPLE_RATES = (8000, 16000, 24000, 32000, 44100, 48000)
DEFAULT_SAMPLE_RATE = 16000

MP3_CHANNELS = 1
MP3_BITRATE_KBPS = 128
MP3_QUALITY = 5                     # LAME scale: 0 best .. 9 worst, 5 = "good"

# Input rates LAME accepts (MPEG-1, MPEG-2 and MPEG-2.5 layer III)
MP3_SAMPLE_RATES = {8000, 11025, 12000, 16000, 22050, 24000, 32000, 44100, 48000}

DEFAULT_WORKERS = 1
PROGRESS_EVERY = 100                # log progress every N files

# ── Logging ──────────────────────────────────────────────────────────────────

logger = logging.getLogger("silk2mp3")


def setup_logging(error_log: Optional[Path] = None, verbose: bool = False) -> None:
    """Console on stdout, plus WARNING+ to ``error_log`` when given."""
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.DEBUG)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(console)

    if error_log is not None:
        fh = logging.FileHandler(error_log, mode="a", encoding="utf-8")
        fh.setLevel(logging.WARNING)
        fh.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(fh)


# ── Errors ───────────────────────────────────────────────────────────────────

class FatalBatchError(Exception):
    """Aborts the whole run: bad root path, walk failure, wrong target."""


class ConversionError(Exception):
    """A single file failed. Never fatal to a directory run."""

    stage = "convert"

    def __init__(self, input_path: str | Path, message: str):
        super().__init__(message)
        self.input_path = Path(input_path)
        self.message = message

    def __str__(self) -> str:
        return f"{self.stage} failed for {self.input_path}: {self.message}"


class InputReadError(ConversionError):
    stage = "read"


class DecodeError(ConversionError):
    stage = "decode"


class EncoderConfigError(ConversionError):
    stage = "configure"


class EncodeError(ConversionError):
    stage = "encode"


class FlushError(ConversionError):
    stage = "flush"


class OutputWriteError(ConversionError):
    stage = "write"


class SampleAlignmentError(ValueError):
    """Decoded PCM does not split evenly into 16-bit samples."""


# ── Data Structures ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ConversionRequest:
    input_path:  Path
    sample_rate: int = DEFAULT_SAMPLE_RATE
    output_path: Optional[Path] = None      # derived from input_path if None

    def __post_init__(self):
        if self.sample_rate not in SAMPLE_RATES:
            raise ValueError(
                f"Unsupported sample rate {self.sample_rate}; "
                f"expected one of {', '.join(map(str, SAMPLE_RATES))}"
            )
        object.__setattr__(self, "input_path", Path(self.input_path))
        if self.output_path is None:
            object.__setattr__(self, "output_path", resolve_output_path(self.input_path))
        else:
            object.__setattr__(self, "output_path", Path(self.output_path))


@dataclass
class ConversionRecord:
    """One record per attempted input file."""
    input_path:          str
    output_path:         str
    status:              str                # success | failed | skipped
    error_log:           Optional[str] = None
    # Sizes along the pipeline
    pcm_bytes:           Optional[int] = None
    sample_count:        Optional[int] = None
    encoded_bytes:       Optional[int] = None
    flushed_bytes:       Optional[int] = None
    mp3_bytes:           Optional[int] = None
    conversion_time_sec: Optional[float] = None


@dataclass
class BatchSummary:
    records:     list[ConversionRecord] = field(default_factory=list)
    elapsed_sec: float = 0.0

    def _count(self, status: str) -> int:
        return sum(1 for r in self.records if r.status == status)

    @property
    def success(self) -> int:
        return self._count("success")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    @property
    def had_failures(self) -> bool:
        return self.failed > 0


# ── Helpers ──────────────────────────────────────────────────────────────────

def format_hms(seconds: float) -> str:
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    s = seconds % 60
    return f"{h:02d}:{m:02d}:{s:05.2f}"


def resolve_output_path(input_path: str | Path) -> Path:
    """Same directory and base name, ``.silk`` swapped for ``.mp3``."""
    input_path = Path(input_path)
    output_path = input_path.with_suffix(TARGET_EXTENSION)
    if output_path == input_path:
        raise ValueError(f"Output path would overwrite the input: {input_path}")
    return output_path


def should_skip(output_path: str | Path) -> bool:
    return Path(output_path).exists()


def to_samples(pcm: bytes) -> np.ndarray:
    """
    View decoded PCM as little-endian signed 16-bit mono samples.

    An odd byte count means the decoder produced a truncated stream; it is
    rejected rather than silently dropping the trailing byte.
    """
    if len(pcm) % 2:
        raise SampleAlignmentError(
            f"decoded PCM has odd length {len(pcm)}; expected whole 16-bit samples"
        )
    return np.frombuffer(pcm, dtype="<i2")


class OutputBuffer:
    """
    Growable byte buffer that external producers write into directly.

    ``reserve`` pre-sizes the capacity, ``spare`` exposes the unwritten tail
    as a writable memoryview, and ``commit`` advances the logical length by
    the count the producer reports. The bytes themselves are not re-checked;
    the count must not exceed the spare capacity.
    """

    def __init__(self):
        self._data = bytearray()
        self._length = 0

    def __len__(self) -> int:
        return self._length

    @property
    def capacity(self) -> int:
        return len(self._data)

    def reserve(self, additional: int) -> None:
        needed = self._length + additional
        if needed > len(self._data):
            self._data.extend(bytes(needed - len(self._data)))

    def spare(self) -> memoryview:
        return memoryview(self._data)[self._length:]

    def commit(self, count: int) -> None:
        if count < 0 or count > len(self._data) - self._length:
            raise ValueError(
                f"commit of {count} bytes exceeds spare capacity "
                f"{len(self._data) - self._length}"
            )
        self._length += count

    def getvalue(self) -> bytes:
        return bytes(self._data[:self._length])


# ── Codec Services ───────────────────────────────────────────────────────────

class PcmDecoder(Protocol):
    def decode(self, data: bytes, sample_rate: int) -> bytes: ...


class Mp3Encoder(Protocol):
    def configure(self, channels: int, sample_rate: int,
                  bitrate_kbps: int, quality: int) -> None: ...

    def max_buffer_size(self, sample_count: int) -> int: ...

    def encode(self, samples: np.ndarray, out: memoryview) -> int: ...

    def flush(self, out: memoryview) -> int: ...


class SilkDecoder:
    """SILK v3 stream -> raw 16-bit LE mono PCM via pysilk."""

    def decode(self, data: bytes, sample_rate: int) -> bytes:
        with io.BytesIO(data) as src, io.BytesIO() as dst:
            pysilk.decode(src, dst, sample_rate)
            return dst.getvalue()


def _copy_into(chunk: bytes, out: memoryview) -> int:
    n = len(chunk)
    if n > len(out):
        raise BufferError(f"encoder produced {n} bytes, only {len(out)} reserved")
    out[:n] = chunk
    return n


class LameEncoder:
    """One LAME instance per file; lameenc keeps encoder state between calls."""

    def __init__(self):
        self._lame = lameenc.Encoder()

    def configure(self, channels: int, sample_rate: int,
                  bitrate_kbps: int, quality: int) -> None:
        if channels not in (1, 2):
            raise ValueError(f"unsupported channel count {channels}")
        if sample_rate not in MP3_SAMPLE_RATES:
            raise ValueError(f"unsupported MP3 sample rate {sample_rate}")
        self._lame.set_channels(channels)
        self._lame.set_in_sample_rate(sample_rate)
        self._lame.set_bit_rate(bitrate_kbps)
        self._lame.set_quality(quality)

    def max_buffer_size(self, sample_count: int) -> int:
        # LAME's documented worst case: 1.25 * samples + 7200
        return math.ceil(1.25 * sample_count) + 7200

    def encode(self, samples: np.ndarray, out: memoryview) -> int:
        return _copy_into(self._lame.encode(samples.tobytes()), out)

    def flush(self, out: memoryview) -> int:
        """Final lame_encode_flush; lameenc has no no-gap variant."""
        return _copy_into(self._lame.flush(), out)


# ── Core Conversion (single file) ───────────────────────────────────────────

def transcode(
    request: ConversionRequest,
    decoder: Optional[PcmDecoder] = None,
    encoder_factory: Callable[[], Mp3Encoder] = LameEncoder,
) -> ConversionRecord:
    """
    Convert one .silk file to .mp3.

    Returns a ``success`` or ``skipped`` record; any failure raises the
    ConversionError subclass for the stage that broke. Nothing is written
    until the whole MP3 stream is in memory, so a failed file leaves no
    output behind and is retried on the next run.
    """
    input_path = request.input_path
    output_path = request.output_path
    decoder = decoder if decoder is not None else SilkDecoder()

    if should_skip(output_path):
        logger.info(f"Output {output_path} already exists, skipping conversion.")
        return ConversionRecord(
            input_path=str(input_path), output_path=str(output_path),
            status="skipped",
        )

    t0 = time.monotonic()

    logger.info(f"Reading file: {input_path}")
    try:
        silk_bytes = input_path.read_bytes()
    except OSError as exc:
        raise InputReadError(input_path, f"failed to read input file: {exc}") from exc

    logger.info(f"Decoding SILK from {input_path}")
    try:
        pcm = decoder.decode(silk_bytes, request.sample_rate)
    except Exception as exc:
        raise DecodeError(input_path, str(exc) or type(exc).__name__) from exc

    try:
        samples = to_samples(pcm)
    except SampleAlignmentError as exc:
        raise DecodeError(input_path, str(exc)) from exc
    logger.debug(f"  {len(pcm)} PCM bytes -> {len(samples)} samples @ {request.sample_rate} Hz")

    logger.info(f"Encoding to MP3 for {output_path}")
    try:
        encoder = encoder_factory()
        encoder.configure(MP3_CHANNELS, request.sample_rate,
                          MP3_BITRATE_KBPS, MP3_QUALITY)
    except Exception as exc:
        raise EncoderConfigError(input_path, f"encoder rejected settings: {exc}") from exc

    buf = OutputBuffer()
    try:
        buf.reserve(encoder.max_buffer_size(len(samples)))
        with buf.spare() as spare:
            encoded = encoder.encode(samples, spare)
        buf.commit(encoded)
    except Exception as exc:
        raise EncodeError(input_path, f"MP3 encoding failed: {exc}") from exc

    try:
        with buf.spare() as spare:
            flushed = encoder.flush(spare)
        buf.commit(flushed)
    except Exception as exc:
        raise FlushError(input_path, f"MP3 flush failed: {exc}") from exc

    mp3 = buf.getvalue()
    try:
        # "x" mode: never clobber a file that appeared after the skip check
        fh = open(output_path, "xb")
    except OSError as exc:
        raise OutputWriteError(input_path, f"failed to create output file {output_path}: {exc}") from exc
    try:
        with fh:
            fh.write(mp3)
    except OSError as exc:
        output_path.unlink(missing_ok=True)
        raise OutputWriteError(input_path, f"failed to write MP3 data to {output_path}: {exc}") from exc

    conv_time = time.monotonic() - t0
    logger.info(f"Converted {input_path} to mp3 {output_path} successfully!")

    return ConversionRecord(
        input_path=str(input_path), output_path=str(output_path),
        status="success", error_log=None,
        pcm_bytes=len(pcm), sample_count=len(samples),
        encoded_bytes=encoded, flushed_bytes=flushed, mp3_bytes=len(mp3),
        conversion_time_sec=conv_time,
    )


# ── Batch Driver ─────────────────────────────────────────────────────────────

def _walk_error(exc: OSError):
    raise FatalBatchError(f"Failed to read directory entry: {exc}") from exc


def discover_silk_files(root: Path) -> list[Path]:
    """Recursively find all .silk files, sorted for determinism."""
    found = []
    for dirpath, dirs, files in os.walk(root, onerror=_walk_error):
        dirs.sort()
        for fname in sorted(files):
            path = Path(dirpath) / fname
            if path.suffix == SOURCE_EXTENSION and path.is_file():
                found.append(path)
    return found


def _failed_record(path: Path, exc: ConversionError) -> ConversionRecord:
    return ConversionRecord(
        input_path=str(path), output_path=str(resolve_output_path(path)),
        status="failed", error_log=str(exc),
    )


def run_batch(
    silk_files: list[Path],
    sample_rate: int,
    workers: int = DEFAULT_WORKERS,
    decoder: Optional[PcmDecoder] = None,
    encoder_factory: Callable[[], Mp3Encoder] = LameEncoder,
) -> BatchSummary:
    """
    Convert every file, isolating failures. With ``workers > 1`` files are
    spread over a thread pool; each conversion owns its encoder and buffers.
    """
    decoder = decoder if decoder is not None else SilkDecoder()
    summary = BatchSummary()
    total = len(silk_files)
    t_start = time.monotonic()

    def _one(path: Path) -> ConversionRecord:
        try:
            return transcode(ConversionRequest(path, sample_rate), decoder, encoder_factory)
        except ConversionError as exc:
            logger.error(f"FAILED: {exc.input_path} ({exc.stage}): {exc.message}")
            return _failed_record(path, exc)

    def _progress(completed: int):
        if completed % PROGRESS_EVERY == 0 or completed == total:
            elapsed = time.monotonic() - t_start
            rate = completed / elapsed if elapsed > 0 else 0
            logger.info(
                f"  Progress: {completed}/{total} "
                f"({summary.success} ok, {summary.failed} fail, {summary.skipped} skipped) "
                f"[{rate:.1f} files/s]"
            )

    if workers <= 1:
        for path in silk_files:
            summary.records.append(_one(path))
            _progress(len(summary.records))
    else:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(_one, path) for path in silk_files]
            for future in as_completed(futures):
                summary.records.append(future.result())
                _progress(len(summary.records))

    summary.elapsed_sec = time.monotonic() - t_start
    return summary


def run(
    root_path: str | Path,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    *,
    workers: int = DEFAULT_WORKERS,
    decoder: Optional[PcmDecoder] = None,
    encoder_factory: Callable[[], Mp3Encoder] = LameEncoder,
) -> BatchSummary:
    """
    Convert ``root_path``: a single .silk file, or every .silk file below a
    directory. A failing single file propagates its ConversionError; inside
    a directory failures are logged and the walk carries on.
    """
    if sample_rate not in SAMPLE_RATES:
        raise FatalBatchError(f"Unsupported sample rate: {sample_rate}")

    path = Path(root_path)
    if not path.exists():
        raise FatalBatchError(f"Input path does not exist: {path}")

    if path.is_file():
        if path.suffix != SOURCE_EXTENSION:
            raise FatalBatchError(f"Input file is not a {SOURCE_EXTENSION} file: {path}")
        t0 = time.monotonic()
        record = transcode(ConversionRequest(path, sample_rate), decoder, encoder_factory)
        return BatchSummary(records=[record], elapsed_sec=time.monotonic() - t0)

    if path.is_dir():
        logger.info(f"Processing directory: {path}")
        silk_files = discover_silk_files(path)
        logger.info(f"Found {len(silk_files)} {SOURCE_EXTENSION} files in '{path}'")
        summary = run_batch(silk_files, sample_rate, workers, decoder, encoder_factory)
        logger.info(f"Finished processing directory: {path}")
        return summary

    raise FatalBatchError(f"Input path is neither a file nor a directory: {path}")


# ── CLI ──────────────────────────────────────────────────────────────────────

def _positive_int(value: str) -> int:
    n = int(value)
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {n}")
    return n


def _log_path(value: str) -> Path:
    path = Path(value)
    if not path.parent.is_dir():
        raise argparse.ArgumentTypeError(f"directory does not exist: {path.parent}")
    return path


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="silk2mp3",
        description="Convert SILK voice recordings (.silk) to MP3.",
    )
    parser.add_argument(
        "-r", "--sample-rate", type=int, choices=SAMPLE_RATES,
        default=DEFAULT_SAMPLE_RATE,
        help=f"decode/encode sample rate in Hz (default: {DEFAULT_SAMPLE_RATE})",
    )
    parser.add_argument(
        "-w", "--workers", type=_positive_int, default=DEFAULT_WORKERS,
        help="files converted in parallel (default: 1, sequential)",
    )
    parser.add_argument(
        "--error-log", type=_log_path, default=None,
        help="also append warnings and errors to this file",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "input_path", type=Path,
        help=f"a {SOURCE_EXTENSION} file or a directory containing {SOURCE_EXTENSION} files",
    )
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.error_log, args.verbose)
    logger.debug(f"Config: sample rate {args.sample_rate} Hz, {args.workers} worker(s)")

    try:
        summary = run(
            args.input_path, args.sample_rate,
            workers=args.workers,
            decoder=SilkDecoder(),
            encoder_factory=LameEncoder,
        )
    except FatalBatchError as exc:
        logger.error(str(exc))
        return 1
    except ConversionError as exc:
        logger.error(f"Error converting {exc.input_path}: {exc.message}")
        return 1

    level = logging.WARNING if summary.had_failures else logging.INFO
    logger.log(
        level,
        f"Done in {format_hms(summary.elapsed_sec)}: "
        f"{summary.success} ok, {summary.failed} failed, {summary.skipped} skipped"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
