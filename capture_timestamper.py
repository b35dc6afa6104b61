#!/usr/bin/env python3
"""
Capture Timestamper for VMAF Evaluation
=======================================
Round-trips timing information through the visible content of a video so that
a capture sent through a lossy real-time transport can be temporally aligned
with its reference before objective quality scoring.

Watermark mode burns ``<id>-<milliseconds>`` into a black band at the top of
every frame. Recognize mode reads that band back with OCR and rewrites each
frame's presentation time to the recovered value, dropping frames whose text
cannot be read.

Both modes re-encode to VP8 in an IVF container with every frame a keyframe.

Watermark mode needs PyAV built against an FFmpeg with freetype (the
``drawtext`` filter). The binary wheels on PyPI ship without it; install PyAV
from source against a system FFmpeg, or use a distribution package.
"""

import json
import logging
import re
import signal
import sys
import time
import queue
from collections import deque
from dataclasses import dataclass, field, fields, asdict
from enum import Enum
from fractions import Fraction
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import av
import cv2
import numpy as np
import pytesseract


# =============================================================================
# Configuration & Constants
# =============================================================================

# Height of the watermark band as a fraction of the frame height (1/15)
BAND_HEIGHT_DIVISOR = 15
FONT_SIZE_DIVISOR = 18
DEFAULT_FONT_FILE = "/usr/share/fonts/truetype/noto/NotoMono-Regular.ttf"

DEFAULT_WATERMARK_ID = "1"
# Recognition reads back at most three digits of id
WATERMARK_ID_PATTERN = re.compile(r"[0-9]{1,3}")

# Encoder policy: every frame must be independently decodable
ENCODER_CODEC = "libvpx"
ENCODER_BIT_RATE = 20000
ENCODER_GOP_SIZE = 1
ENCODER_OPTIONS = {
    'quality': 'best',
    'cpu-used': '0',
    'crf': '1',
    'qmin': '1',
    'qmax': '10',
    'kf-min-dist': '1',
    'kf-max-dist': '1',
}

# Muxer hint, harmless for containers that do not support it
CONTAINER_OPTIONS = {'movflags': 'faststart'}

# Progress reporting throttle
PROGRESS_MIN_FRAMES = 100
PROGRESS_MIN_SECONDS = 1.0

# OCR
OCR_WHITELIST = "0123456789-"
OCR_PAGE_SEG_MODE = 7  # single text line
DEFAULT_OCR_SCALE = 2.0
OCR_ENGINES = ('tesseract', 'easyocr')

# <1-3 digit id>-<1-13 digit milliseconds>
OVERLAY_TEXT_PATTERN = re.compile(r'(?P<id>[0-9]{1,3})-(?P<time>[0-9]{1,13})')

# Output naming
OUTPUT_EXTENSION = ".ivf"
_EXTENSION_PATTERN = re.compile(r'^(.+)\.\w+$')
_FIRST_EXTENSION_PATTERN = re.compile(r'\..+$')

# Value stored in the stream mapping for input streams that are not carried
SKIP_STREAM = -1


class Mode(Enum):
    """Transform policy applied to every carried stream for a whole run"""
    WATERMARK = "watermark"
    RECOGNIZE = "recognize"


OUTPUT_SUFFIXES = {
    Mode.WATERMARK: ".w" + OUTPUT_EXTENSION,
    Mode.RECOGNIZE: ".r" + OUTPUT_EXTENSION,
}


# =============================================================================
# Errors
# =============================================================================

class CaptureTimestampError(Exception):
    """Base class for all pipeline errors"""


class ConfigError(CaptureTimestampError):
    """Invalid configuration or unusable OCR engine"""


class OutputCollisionError(CaptureTimestampError):
    """Derived output path exists and overwriting is disabled"""


class OpenError(CaptureTimestampError):
    """Input or output container could not be opened"""


class CodecError(CaptureTimestampError):
    """Decoder or encoder could not be configured, or failed on data"""


class DemuxError(CaptureTimestampError):
    """Input container could not be read past the header"""


class FilterError(CaptureTimestampError):
    """Overlay filter graph could not be built or rejected a frame"""


class RecognitionError(CaptureTimestampError):
    """The text recognition engine itself failed (not a misread)"""


class MuxError(CaptureTimestampError):
    """Header, packet or trailer could not be written"""


class RenameError(CaptureTimestampError):
    """Output file could not be renamed after a successful run"""


@dataclass
class PipelineConfig:
    """Tunable settings for a run. Defaults reproduce the fixed policy above."""
    overwrite_existing: bool = True
    font_file: str = DEFAULT_FONT_FILE
    band_divisor: int = BAND_HEIGHT_DIVISOR
    font_size_divisor: int = FONT_SIZE_DIVISOR
    encoder_codec: str = ENCODER_CODEC
    bit_rate: int = ENCODER_BIT_RATE
    gop_size: int = ENCODER_GOP_SIZE
    encoder_options: Dict[str, str] = field(default_factory=lambda: dict(ENCODER_OPTIONS))
    ocr_engine: str = 'tesseract'
    tessdata_dir: Optional[str] = None
    ocr_scale: float = DEFAULT_OCR_SCALE
    ocr_preprocess: bool = True
    debug_dir: Optional[str] = None

    def __post_init__(self):
        if self.ocr_engine not in OCR_ENGINES:
            raise ConfigError(f"Unknown OCR engine '{self.ocr_engine}' (expected one of {OCR_ENGINES})")
        if self.band_divisor <= 0 or self.font_size_divisor <= 0:
            raise ConfigError("band_divisor and font_size_divisor must be positive")
        if self.ocr_scale <= 0:
            raise ConfigError("ocr_scale must be positive")
        self.encoder_options = {str(k): str(v) for k, v in self.encoder_options.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PipelineConfig':
        """Create a config from a mapping of field names, rejecting unknown keys"""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_json_file(cls, json_path: Path) -> 'PipelineConfig':
        """Load config from a JSON object file"""
        try:
            with open(json_path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Failed to load config {json_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config {json_path} must contain a JSON object")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# Data Model
# =============================================================================

@dataclass(frozen=True)
class Recognized:
    """Watermark text read back from a frame"""
    id: int
    milliseconds: int

    @property
    def presentation_time(self) -> float:
        """Recovered presentation time in seconds"""
        return self.milliseconds / 1000.0

    def to_pts(self, time_base: Fraction) -> int:
        """Recovered presentation time in units of ``time_base`` (truncated)"""
        return int(Fraction(self.milliseconds, 1000) / Fraction(time_base))


@dataclass(frozen=True)
class Unrecognized:
    """No watermark text could be parsed; ``raw_text`` is kept for diagnosis"""
    raw_text: str = ""


RecognitionResult = Union[Recognized, Unrecognized]


@dataclass
class PipelineResult:
    """Outcome of a completed run"""
    input_path: Path
    output_path: Path
    mode: Mode
    frames: int = 0
    failed_frames: int = 0
    recognized_id: Optional[int] = None
    cancelled: bool = False
    rename_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'input_path': str(self.input_path),
            'output_path': str(self.output_path),
            'mode': self.mode.value,
            'frames': self.frames,
            'failed_frames': self.failed_frames,
            'recognized_id': self.recognized_id,
            'cancelled': self.cancelled,
            'rename_error': self.rename_error,
        }


def build_stream_mapping(stream_types: List[str]) -> List[int]:
    """
    Map input stream ordinals to output stream ordinals.

    Video streams get dense output ordinals in input order; everything else
    gets SKIP_STREAM.
    """
    mapping = []
    next_output = 0
    for stream_type in stream_types:
        if stream_type != 'video':
            mapping.append(SKIP_STREAM)
            continue
        mapping.append(next_output)
        next_output += 1
    return mapping


# =============================================================================
# Output Naming
# =============================================================================

def derive_output_path(input_path: Union[str, Path], mode: Mode) -> Path:
    """
    Output path for a run: the immediate extension is replaced by a
    mode-specific suffix, e.g. ``foo.bar.mp4`` -> ``foo.bar.w.ivf``.
    """
    path = Path(input_path)
    match = _EXTENSION_PATTERN.match(path.name)
    base = match.group(1) if match else path.name
    return path.with_name(base + OUTPUT_SUFFIXES[Mode(mode)])


def derive_identified_path(input_path: Union[str, Path], recognized_id: int) -> Path:
    """
    Final name of a recognized capture: everything from the first dot of the
    input name is replaced, e.g. ``foo.bar.mp4`` -> ``foo.42.ivf``.
    """
    path = Path(input_path)
    match = _FIRST_EXTENSION_PATTERN.search(path.name)
    base = path.name[:match.start()] if match else path.name
    return path.with_name(f"{base}.{recognized_id}{OUTPUT_EXTENSION}")


# =============================================================================
# Timing Helpers
# =============================================================================

def rescale_ts(value: Optional[int], src: Fraction, dst: Fraction) -> Optional[int]:
    """Rescale a timestamp between time bases, rounding half away from zero"""
    if value is None:
        return None
    scaled = Fraction(value) * Fraction(src) / Fraction(dst)
    if scaled >= 0:
        return int(scaled + Fraction(1, 2))
    return -int(-scaled + Fraction(1, 2))


def timestamp_seconds(pts: Optional[int], time_base: Fraction) -> float:
    if pts is None:
        return 0.0
    return float(pts * Fraction(time_base))


def band_height(frame_height: int, divisor: int = BAND_HEIGHT_DIVISOR) -> int:
    """Height in pixels of the watermark band at the top of the frame"""
    return max(1, int(round(frame_height / divisor)))


# =============================================================================
# Cancellation
# =============================================================================

class CancellationSignal:
    """
    Single-slot stop notification.

    A signal handler (or any other thread) calls ``request_stop``; the
    pipeline polls ``stop_requested`` between packets and never blocks on it.
    """

    def __init__(self):
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=1)
        self._stopped = False

    def request_stop(self, value: Any = "stop") -> None:
        try:
            self._queue.put_nowait(value)
        except queue.Full:
            pass  # a stop is already pending

    def stop_requested(self) -> bool:
        if self._stopped:
            return True
        try:
            self._queue.get_nowait()
        except queue.Empty:
            return False
        self._stopped = True
        return True


# =============================================================================
# Text Recognition Engines
# =============================================================================

def clean_ocr_text(text: str) -> str:
    """Clean up common OCR confusions for ``<id>-<ms>`` text"""
    if not text:
        return ""

    replacements = {
        ' ': '',
        '\n': '',
        '\r': '',
        '\t': '',
        'O': '0',
        'o': '0',
        'l': '1',
        'I': '1',
        '|': '1',
        '‐': '-',  # hyphen
        '‑': '-',  # non-breaking hyphen
        '‒': '-',  # figure dash
        '–': '-',  # en dash
        '—': '-',  # em dash
        '−': '-',  # minus sign
        '_': '-',
    }

    text = text.strip()
    for old, new in replacements.items():
        text = text.replace(old, new)
    return text


def parse_overlay_text(text: str) -> RecognitionResult:
    """Parse recognized text against the ``<id>-<ms>`` watermark pattern"""
    match = OVERLAY_TEXT_PATTERN.search(clean_ocr_text(text or ""))
    if not match:
        return Unrecognized(raw_text=(text or "").strip())
    return Recognized(id=int(match.group('id')), milliseconds=int(match.group('time')))


class TesseractRecognizer:
    """Tesseract engine restricted to digits and hyphen on a single line"""

    def __init__(self, tessdata_dir: Optional[str] = None):
        self.config = f'--psm {OCR_PAGE_SEG_MODE} -c tessedit_char_whitelist={OCR_WHITELIST}'
        if tessdata_dir:
            self.config += f' --tessdata-dir "{tessdata_dir}"'

        try:
            self.version = pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError as e:
            raise ConfigError(f"Tesseract binary not found: {e}") from e

    def recognize_text(self, image: np.ndarray) -> str:
        try:
            return pytesseract.image_to_string(image, config=self.config)
        except pytesseract.TesseractError as e:
            raise RecognitionError(f"Tesseract failed: {e}") from e


class EasyOCRRecognizer:
    """
    EasyOCR engine. The reader is created once per recognizer and uses the
    GPU when torch reports one.
    """

    def __init__(self):
        self.logger = logging.getLogger("EasyOCRRecognizer")
        try:
            import easyocr
            import torch
        except ImportError as e:
            raise ConfigError("EasyOCR engine requested but easyocr is not installed "
                              "(install the 'easyocr' extra)") from e

        use_gpu = torch.cuda.is_available()
        if not use_gpu and hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
            use_gpu = True
        self.logger.info(f"Initializing EasyOCR (GPU: {use_gpu})")
        self.reader = easyocr.Reader(['en'], gpu=use_gpu, verbose=False)

    def recognize_text(self, image: np.ndarray) -> str:
        if image.ndim == 2:
            image = cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        try:
            results = self.reader.readtext(image, allowlist=OCR_WHITELIST, detail=0, paragraph=False)
        except RuntimeError as e:
            raise RecognitionError(f"EasyOCR failed: {e}") from e
        return ''.join(results)


def create_recognizer(config: PipelineConfig):
    """Build the text recognition engine named by the config"""
    if config.ocr_engine == 'easyocr':
        return EasyOCRRecognizer()
    return TesseractRecognizer(config.tessdata_dir)


# =============================================================================
# Frame Transform Service
# =============================================================================

def _filter_escape(value: str) -> str:
    return value.replace('\\', '\\\\').replace(':', '\\:').replace("'", "\\'")


def build_overlay_filters(
    watermark_id: str,
    frame_height: int,
    font_file: str = DEFAULT_FONT_FILE,
    band_divisor: int = BAND_HEIGHT_DIVISOR,
    font_size_divisor: int = FONT_SIZE_DIVISOR,
) -> List[tuple]:
    """
    Filter chain drawing an opaque band and ``<id>-<ms>`` text into it.

    Returns ``(filter_name, options)`` pairs. ``t`` is the filter clock of the
    frame being drawn, in seconds.
    """
    text_height = band_height(frame_height, band_divisor)
    font_size = max(1, int(round(frame_height / font_size_divisor)))
    return [
        ('drawbox', {
            'x': '0',
            'y': '0',
            'w': 'iw',
            'h': str(text_height),
            'color': 'black',
            't': 'fill',
        }),
        ('drawtext', {
            'fontfile': font_file,
            'text': f'{watermark_id}-%{{eif:t*1000:u}}',
            'fontcolor': 'white',
            'fontsize': str(font_size),
            'x': '(w-text_w)/2',
            'y': f'({text_height}-text_h)/2',
        }),
    ]


def describe_filters(filters: List[tuple]) -> str:
    """Render a filter chain as an ffmpeg filtergraph description"""
    parts = []
    for name, options in filters:
        args = ':'.join(f"{key}={_filter_escape(value)}" for key, value in options.items())
        parts.append(f"{name}={args}")
    return ','.join(parts)


class OverlayTransform:
    """Burns the watermark band into frames through an ffmpeg filter graph"""

    def __init__(self, width: int, height: int, pix_fmt: str, time_base: Fraction,
                 sample_aspect_ratio: Optional[Fraction], filters: List[tuple]):
        self.logger = logging.getLogger("OverlayTransform")
        self.description = describe_filters(filters)
        time_base = Fraction(time_base)
        sar = sample_aspect_ratio or Fraction(1, 1)
        buffer_args = (
            f"video_size={width}x{height}:"
            f"pix_fmt={pix_fmt}:"
            f"time_base={time_base.numerator}/{time_base.denominator}:"
            f"pixel_aspect={sar.numerator}/{sar.denominator}"
        )

        missing = [name for name, _ in filters if name not in av.filter.filters_available]
        if missing:
            raise FilterError(f"FFmpeg filter(s) not available in this PyAV build: {', '.join(missing)} "
                              f"(drawtext needs an FFmpeg built with freetype)")

        try:
            graph = av.filter.Graph()
            chain = [graph.add("buffer", buffer_args)]
            for name, options in filters:
                chain.append(graph.add(name, **options))
            chain.append(graph.add("buffersink"))
            for upstream, downstream in zip(chain, chain[1:]):
                upstream.link_to(downstream)
            graph.configure()
        except (av.error.FFmpegError, ValueError) as e:
            raise FilterError(f"Failed to build overlay filter graph '{self.description}': {e}") from e

        self.graph = graph
        self.logger.debug(f"Overlay filter graph: {self.description}")

    @classmethod
    def for_stream(cls, input_stream, watermark_id: str, config: PipelineConfig) -> 'OverlayTransform':
        decoder = input_stream.codec_context
        filters = build_overlay_filters(
            watermark_id,
            decoder.height,
            font_file=config.font_file,
            band_divisor=config.band_divisor,
            font_size_divisor=config.font_size_divisor,
        )
        return cls(decoder.width, decoder.height, decoder.pix_fmt, input_stream.time_base,
                   decoder.sample_aspect_ratio, filters)

    def apply(self, frame):
        """Push one frame through the graph and return the stamped frame"""
        try:
            self.graph.push(frame)
            filtered = self.graph.pull()
        except av.error.FFmpegError as e:
            raise FilterError(f"Overlay filter rejected frame pts={frame.pts}: {e}") from e
        filtered.pts = frame.pts
        return filtered


def prepare_band_for_ocr(band_rgb: np.ndarray, scale: float = DEFAULT_OCR_SCALE) -> np.ndarray:
    """
    Binarize the band to black text on white background and scale it up.

    The watermark is light text on a dark band, so the thresholded image is
    inverted whenever the band is mostly dark.
    """
    gray = cv2.cvtColor(band_rgb, cv2.COLOR_RGB2GRAY)
    _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    if np.mean(gray) < 128:
        binary = cv2.bitwise_not(binary)
    if scale != 1.0:
        binary = cv2.resize(binary, None, fx=scale, fy=scale, interpolation=cv2.INTER_CUBIC)
    return binary


class RecognitionTransform:
    """
    Reads the watermark band of a frame back with OCR.

    Never modifies the frame; the owning transcoder rewrites the timestamp
    when recognition succeeds.
    """

    def __init__(self, recognizer, band_divisor: int = BAND_HEIGHT_DIVISOR,
                 preprocess: bool = True, scale: float = DEFAULT_OCR_SCALE,
                 debug_dir: Optional[Path] = None):
        self.recognizer = recognizer
        self.band_divisor = band_divisor
        self.preprocess = preprocess
        self.scale = scale
        self.debug_dir = Path(debug_dir) if debug_dir else None
        self.logger = logging.getLogger("RecognitionTransform")

    @classmethod
    def from_config(cls, config: PipelineConfig, recognizer=None) -> 'RecognitionTransform':
        return cls(
            recognizer if recognizer is not None else create_recognizer(config),
            band_divisor=config.band_divisor,
            preprocess=config.ocr_preprocess,
            scale=config.ocr_scale,
            debug_dir=config.debug_dir,
        )

    def crop_band(self, rgb: np.ndarray) -> np.ndarray:
        return rgb[:band_height(rgb.shape[0], self.band_divisor), :]

    def recognize(self, frame, label: str = "") -> RecognitionResult:
        """Convert to RGB, crop the band, run OCR and parse the text"""
        rgb = frame.to_ndarray(format='rgb24')
        band = np.ascontiguousarray(self.crop_band(rgb))
        image = prepare_band_for_ocr(band, self.scale) if self.preprocess else band

        result = parse_overlay_text(self.recognizer.recognize_text(image))

        if isinstance(result, Unrecognized) and self.debug_dir is not None:
            self._save_debug_crop(band, label)
        return result

    def _save_debug_crop(self, band: np.ndarray, label: str):
        self.debug_dir.mkdir(parents=True, exist_ok=True)
        path = self.debug_dir / f"{label or 'frame'}_unrecognized.png"
        if not cv2.imwrite(str(path), cv2.cvtColor(band, cv2.COLOR_RGB2BGR)):
            self.logger.warning(f"Failed to write debug crop: {path}")


def create_transform(mode: Mode, input_stream, watermark_id: Optional[str], config: PipelineConfig):
    """Select the transform variant for a run"""
    if Mode(mode) is Mode.WATERMARK:
        return OverlayTransform.for_stream(input_stream, watermark_id or DEFAULT_WATERMARK_ID, config)
    return RecognitionTransform.from_config(config)


# =============================================================================
# Stream Transcoder
# =============================================================================

class StreamTranscoder:
    """
    Decode -> transform -> encode for one carried video stream.

    Owns its decoder and encoder exclusively. Frames and packets produced by
    the codecs are buffered and handed out by the drain methods, so end of
    stream is just another feed followed by a drain.
    """

    def __init__(
        self,
        input_index: int,
        output_index: int,
        decoder,
        encoder,
        input_time_base: Fraction,
        transform: Union[OverlayTransform, RecognitionTransform],
        enable_logging: bool = False,
        total_frames: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.input_index = input_index
        self.output_index = output_index
        self.decoder = decoder
        self.encoder = encoder
        self.input_time_base = Fraction(input_time_base)
        self.transform = transform
        self.enable_logging = enable_logging
        self.total_frames = total_frames

        self.frame_count = 0
        self.failed_frames = 0
        self._recognized_id: Optional[int] = None

        self._decoded: Deque = deque()
        self._encoded: Deque = deque()
        self._decoder_finished = False
        self._encoder_finished = False

        self._clock = clock
        self._last_log_frame_count = 0
        self._last_log_time = clock()

        self.logger = logging.getLogger(f"StreamTranscoder_{input_index}")

    # -- decoder side -------------------------------------------------------

    def feed(self, packet):
        """Send a demuxed packet to the decoder"""
        try:
            self._decoded.extend(self.decoder.decode(packet))
        except av.error.FFmpegError as e:
            raise CodecError(f"Decoder failed on stream {self.input_index}: {e}") from e

    def finish_decoder(self):
        if self._decoder_finished:
            return
        self._decoder_finished = True
        try:
            self._decoded.extend(self.decoder.decode(None))
        except av.error.FFmpegError as e:
            raise CodecError(f"Decoder flush failed on stream {self.input_index}: {e}") from e

    def drain_decoded(self, output, output_time_base: Fraction):
        """Transform and encode every frame the decoder has produced so far"""
        while self._decoded:
            self._process_frame(self._decoded.popleft(), output, output_time_base)

    def _process_frame(self, frame, output, output_time_base: Fraction):
        self.frame_count += 1
        self._log_progress(timestamp_seconds(frame.pts, self.input_time_base))

        transform = self.transform
        if isinstance(transform, OverlayTransform):
            self._send_to_encoder(transform.apply(frame))
            self.drain_encoded(output, output_time_base)
        elif isinstance(transform, RecognitionTransform):
            label = f"stream{self.input_index}_frame{self.frame_count:06d}"
            result = transform.recognize(frame, label=label)
            if isinstance(result, Recognized):
                if self._recognized_id is None:
                    self._recognized_id = result.id
                    self.logger.info(f"Recognized capture id {result.id}")
                new_pts = result.to_pts(self.input_time_base)
                self.logger.debug(f"  pts={frame.pts} id={result.id} "
                                  f"time={result.presentation_time:.3f} pts_new={new_pts}")
                frame.pts = new_pts
                self._send_to_encoder(frame)
                self.drain_encoded(output, output_time_base)
            else:
                self.failed_frames += 1
                self.logger.warning(f"Failed to recognize text on frame {self.frame_count}: "
                                    f"{result.raw_text!r}")
        else:
            raise TypeError(f"Unsupported frame transform: {type(transform).__name__}")

    # -- encoder side -------------------------------------------------------

    def _send_to_encoder(self, frame):
        try:
            self._encoded.extend(self.encoder.encode(frame))
        except av.error.FFmpegError as e:
            raise CodecError(f"Encoder failed on stream {self.input_index}: {e}") from e

    def finish_encoder(self):
        if self._encoder_finished:
            return
        self._encoder_finished = True
        try:
            self._encoded.extend(self.encoder.encode(None))
        except av.error.FFmpegError as e:
            raise CodecError(f"Encoder flush failed on stream {self.input_index}: {e}") from e

    def drain_encoded(self, output, output_time_base: Fraction):
        """Rescale every pending encoded packet to the output time base and mux it"""
        output_stream = output.streams[self.output_index]
        while self._encoded:
            packet = self._encoded.popleft()
            packet.pts = rescale_ts(packet.pts, self.input_time_base, output_time_base)
            packet.dts = rescale_ts(packet.dts, self.input_time_base, output_time_base)
            if packet.duration:
                packet.duration = rescale_ts(packet.duration, self.input_time_base, output_time_base)
            packet.time_base = output_time_base
            packet.stream = output_stream
            try:
                output.mux(packet)
            except av.error.FFmpegError as e:
                raise MuxError(f"Failed to write packet for output stream {self.output_index}: {e}") from e

    # -- accessors ----------------------------------------------------------

    def failed_frame_count(self) -> int:
        return self.failed_frames

    def recognized_id(self) -> Optional[int]:
        return self._recognized_id

    def _log_progress(self, timestamp: float):
        if not self.enable_logging:
            return
        now = self._clock()
        if (self.frame_count - self._last_log_frame_count < PROGRESS_MIN_FRAMES
                or now - self._last_log_time < PROGRESS_MIN_SECONDS):
            return
        total = self.total_frames if self.total_frames else "?"
        self.logger.info(f"[{self.frame_count}/{total}] {timestamp:.2f}s (failed: {self.failed_frames})")
        self._last_log_frame_count = self.frame_count
        self._last_log_time = now


def open_stream_transcoder(
    input_stream,
    output,
    output_index: int,
    mode: Mode,
    watermark_id: Optional[str],
    config: PipelineConfig,
    enable_logging: bool = False,
    transform_factory: Callable = create_transform,
) -> StreamTranscoder:
    """
    Create the output stream and encoder mirroring ``input_stream`` and wrap
    both codecs in a StreamTranscoder.

    ``transform_factory`` takes ``(mode, input_stream, watermark_id, config)``.
    """
    decoder = input_stream.codec_context
    rate = decoder.framerate or input_stream.guessed_rate

    try:
        output_stream = output.add_stream(config.encoder_codec, rate=rate)
        encoder = output_stream.codec_context
        encoder.width = decoder.width
        encoder.height = decoder.height
        if decoder.sample_aspect_ratio:
            encoder.sample_aspect_ratio = decoder.sample_aspect_ratio
        encoder.pix_fmt = decoder.pix_fmt
        encoder.time_base = input_stream.time_base
        encoder.bit_rate = config.bit_rate
        encoder.gop_size = config.gop_size
        encoder.thread_count = 0
        encoder.options = dict(config.encoder_options)
    except (av.error.FFmpegError, ValueError) as e:
        raise CodecError(f"Failed to configure {config.encoder_codec} encoder "
                         f"for input stream {input_stream.index}: {e}") from e

    if output_stream.index != output_index:
        raise CodecError(f"Output stream index {output_stream.index} does not match "
                         f"mapped index {output_index}")

    transform = transform_factory(mode, input_stream, watermark_id, config)

    return StreamTranscoder(
        input_stream.index,
        output_index,
        decoder,
        encoder,
        input_stream.time_base,
        transform,
        enable_logging=enable_logging,
        total_frames=input_stream.frames or 0,
    )


# =============================================================================
# Pipeline Orchestrator
# =============================================================================

class CapturePipeline:
    """
    Demux -> per-stream transcode -> mux for one input file.

    Only video streams are carried. A stop request observed between packets
    ends demuxing early; the flush and trailer phases still run.
    """

    def __init__(
        self,
        input_path: Union[str, Path],
        mode: Mode,
        watermark_id: Optional[str] = None,
        cancellation: Optional[CancellationSignal] = None,
        config: Optional[PipelineConfig] = None,
        open_container: Callable = av.open,
        transcoder_factory: Callable = open_stream_transcoder,
    ):
        self.input_path = Path(input_path)
        self.mode = Mode(mode)
        self.watermark_id = (watermark_id or DEFAULT_WATERMARK_ID) if self.mode is Mode.WATERMARK else None
        if self.watermark_id is not None and not WATERMARK_ID_PATTERN.fullmatch(self.watermark_id):
            raise ConfigError(f"Watermark id must be 1-3 digits, got {self.watermark_id!r}")
        self.cancellation = cancellation or CancellationSignal()
        self.config = config or PipelineConfig()
        self.output_path = derive_output_path(self.input_path, self.mode)

        self._open_container = open_container
        self._transcoder_factory = transcoder_factory

        self.stream_mapping: List[int] = []
        self.transcoders: Dict[int, StreamTranscoder] = {}
        self.output_time_bases: List[Fraction] = []
        self._output_closed = False

        self.logger = logging.getLogger("CapturePipeline")

    def run(self) -> PipelineResult:
        """Execute the full pipeline"""
        self.logger.info(f"Processing: {self.input_path} -> {self.output_path} (mode: {self.mode.value})")
        self._check_output_path()

        input_container = self._open(self.input_path, 'r')
        try:
            output_container = self._open(self.output_path, 'w', container_options=dict(CONTAINER_OPTIONS))
        except OpenError:
            input_container.close()
            raise

        try:
            self._setup_streams(input_container, output_container)
            self._write_header(input_container, output_container)
            cancelled = self._transcode_packets(input_container, output_container)
            self._flush(output_container)
            self._write_trailer(output_container)
        except Exception:
            self._abandon_output(output_container)
            raise
        finally:
            input_container.close()

        result = PipelineResult(
            input_path=self.input_path,
            output_path=self.output_path,
            mode=self.mode,
            frames=sum(t.frame_count for t in self.transcoders.values()),
            failed_frames=sum(t.failed_frame_count() for t in self.transcoders.values()),
            cancelled=cancelled,
        )

        if self.mode is Mode.RECOGNIZE:
            self._dispose_output(result)

        self.logger.info(
            f"Done: {result.output_path} frames: {result.frames} "
            f"failed: {result.failed_frames} id: {result.recognized_id if result.recognized_id is not None else 'none'}"
        )
        return result

    def _check_output_path(self):
        if self.output_path.exists():
            if not self.config.overwrite_existing:
                raise OutputCollisionError(f"Output file {self.output_path} already exists")
            self.logger.warning(f"Overwriting existing output file: {self.output_path}")

    def _open(self, path: Path, mode: str, **kwargs):
        try:
            return self._open_container(str(path), mode, **kwargs)
        except (av.error.FFmpegError, OSError) as e:
            kind = "input" if mode == 'r' else "output"
            raise OpenError(f"Failed to open {kind} file {path}: {e}") from e

    def _setup_streams(self, input_container, output_container):
        """Build the stream mapping and one transcoder per video stream"""
        best = input_container.streams.best('video')
        best_index = best.index if best is not None else None

        streams = list(input_container.streams)
        self.stream_mapping = build_stream_mapping([s.type for s in streams])

        for stream in streams:
            output_index = self.stream_mapping[stream.index]
            if output_index == SKIP_STREAM:
                self.logger.debug(f"Skipping {stream.type} stream {stream.index}")
                continue
            self.transcoders[stream.index] = self._transcoder_factory(
                stream,
                output_container,
                output_index,
                self.mode,
                self.watermark_id,
                self.config,
                enable_logging=(stream.index == best_index),
            )
            self.logger.debug(f"Input stream {stream.index} -> output stream {output_index}")

        if not self.transcoders:
            self.logger.warning(f"No video streams found in {self.input_path}")

    def _write_header(self, input_container, output_container):
        output_container.metadata.update(input_container.metadata)
        try:
            output_container.start_encoding()
        except (av.error.FFmpegError, ValueError) as e:
            raise MuxError(f"Failed to write header for {self.output_path}: {e}") from e

        # Output time bases are only final once the header is written
        self.output_time_bases = [Fraction(s.time_base) for s in output_container.streams]

    def _transcode_packets(self, input_container, output_container) -> bool:
        """Main demux loop. Returns True when stopped by cancellation."""
        packets = input_container.demux()
        while True:
            try:
                packet = next(packets)
            except StopIteration:
                return False
            except av.error.FFmpegError as e:
                raise DemuxError(f"Failed to read {self.input_path}: {e}") from e

            output_index = self.stream_mapping[packet.stream_index]
            # Empty packets mark end of stream; the flush phase handles it
            if output_index != SKIP_STREAM and packet.size:
                transcoder = self.transcoders[packet.stream_index]
                transcoder.feed(packet)
                transcoder.drain_decoded(output_container, self.output_time_bases[output_index])

            if self.cancellation.stop_requested():
                self.logger.info("Stop requested, finishing early")
                return True

    def _flush(self, output_container):
        self.logger.debug("Flushing decoders and encoders")
        for transcoder in self.transcoders.values():
            output_time_base = self.output_time_bases[transcoder.output_index]
            transcoder.finish_decoder()
            transcoder.drain_decoded(output_container, output_time_base)
            transcoder.finish_encoder()
            transcoder.drain_encoded(output_container, output_time_base)

    def _write_trailer(self, output_container):
        # close() is attempted once, even if it fails
        self._output_closed = True
        try:
            output_container.close()
        except av.error.FFmpegError as e:
            raise MuxError(f"Failed to write trailer for {self.output_path}: {e}") from e

    def _abandon_output(self, output_container):
        """Release the output after a fatal error; the partial file stays on disk"""
        if self._output_closed:
            return
        self._output_closed = True
        try:
            output_container.close()
        except av.error.FFmpegError as e:
            self.logger.warning(f"Failed to close partial output {self.output_path}: {e}")

    def _dispose_output(self, result: PipelineResult):
        """Rename the output after the first recognized capture id"""
        if not self.transcoders:
            return
        transcoder = next(iter(self.transcoders.values()))
        recognized_id = transcoder.recognized_id()
        result.recognized_id = recognized_id
        if recognized_id is None:
            self.logger.warning(f"No capture id recognized, keeping {self.output_path}")
            return

        target = derive_identified_path(self.input_path, recognized_id)
        try:
            self._rename_output(target)
        except RenameError as e:
            # The produced file is still valid under its original name
            self.logger.error(str(e))
            result.rename_error = str(e)
            return

        self.logger.info(f"Output file renamed to: {target}")
        result.output_path = target

    def _rename_output(self, target: Path):
        if target.resolve() == self.input_path.resolve():
            raise RenameError(f"Rename target {target} is the input capture itself")
        if target.exists() and not self.config.overwrite_existing:
            raise RenameError(f"Rename target {target} already exists")
        try:
            self.output_path.replace(target)
        except OSError as e:
            raise RenameError(f"Failed to rename {self.output_path} to {target}: {e}") from e


def run(
    input_path: Union[str, Path],
    mode: Mode,
    watermark_id: Optional[str] = None,
    cancellation: Optional[CancellationSignal] = None,
    config: Optional[PipelineConfig] = None,
) -> PipelineResult:
    """Run the pipeline once on ``input_path``"""
    return CapturePipeline(input_path, mode, watermark_id, cancellation, config).run()


def watermark_video(input_path, watermark_id: str, cancellation: Optional[CancellationSignal] = None,
                    config: Optional[PipelineConfig] = None) -> PipelineResult:
    return run(input_path, Mode.WATERMARK, watermark_id, cancellation, config)


def process_video(input_path, cancellation: Optional[CancellationSignal] = None,
                  config: Optional[PipelineConfig] = None) -> PipelineResult:
    return run(input_path, Mode.RECOGNIZE, None, cancellation, config)


# =============================================================================
# Logging Setup
# =============================================================================

def setup_logging(verbose: bool = False):
    """Configure logging for the application"""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )


# =============================================================================
# Main Entry Point
# =============================================================================

def add_config_arguments(parser):
    """Options shared by every command that runs the pipeline"""
    parser.add_argument('--config', '-c', help='JSON config file')
    parser.add_argument('--no-overwrite', action='store_true', help='Fail if the output file already exists')
    parser.add_argument('--font-file', help='Font used for the watermark text')
    parser.add_argument('--ocr-engine', choices=OCR_ENGINES, help='Text recognition engine')
    parser.add_argument('--tessdata-dir', help='Tesseract language data directory')
    parser.add_argument('--debug-dir', help='Save band crops of unrecognized frames here')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose logging')


def config_from_args(args) -> PipelineConfig:
    """Merge a JSON config file with command line overrides"""
    data: Dict[str, Any] = {}
    if args.config:
        data = PipelineConfig.from_json_file(Path(args.config)).to_dict()
    if args.no_overwrite:
        data['overwrite_existing'] = False
    for key in ('font_file', 'ocr_engine', 'tessdata_dir', 'debug_dir'):
        value = getattr(args, key, None)
        if value:
            data[key] = value
    return PipelineConfig.from_dict(data)


def install_signal_handlers(cancellation: CancellationSignal):
    """Turn SIGINT/SIGTERM into a cooperative stop request"""
    def _handler(signum, frame):
        cancellation.request_stop(signal.Signals(signum).name)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def main():
    """Main entry point for command-line usage"""
    import argparse

    parser = argparse.ArgumentParser(
        description='Watermark or recognize real-time video captures for VMAF evaluation',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    watermark_parser = subparsers.add_parser('watermark', help='Burn <id>-<ms> into every frame')
    watermark_parser.add_argument('input', help='Video file to watermark')
    watermark_parser.add_argument('--id', default=DEFAULT_WATERMARK_ID, help='Capture id (1-3 digits)')
    add_config_arguments(watermark_parser)

    recognize_parser = subparsers.add_parser('recognize', help='Recover frame timestamps from the watermark')
    recognize_parser.add_argument('input', help='Captured video file to process')
    add_config_arguments(recognize_parser)

    args = parser.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger('main')

    cancellation = CancellationSignal()
    install_signal_handlers(cancellation)

    try:
        config = config_from_args(args)
        if args.command == 'watermark':
            result = watermark_video(args.input, args.id, cancellation, config)
        else:
            result = process_video(args.input, cancellation, config)
    except CaptureTimestampError as e:
        logger.error(str(e))
        return 1

    print(f"\nOutput: {result.output_path}")
    print(f"  Frames: {result.frames}, failed: {result.failed_frames}")
    if result.recognized_id is not None:
        print(f"  Recognized id: {result.recognized_id}")
    if result.cancelled:
        print("  Stopped early on request")

    return 2 if result.rename_error else 0


if __name__ == '__main__':
    sys.exit(main())
