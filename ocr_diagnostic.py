#!/usr/bin/env python3
"""
OCR Diagnostic Tool for Capture Watermarks
==========================================

Helps diagnose why frames of a capture fail recognition. It decodes frames
from a video, crops the watermark band and runs the configured OCR engine on
several preprocessing variants, saving debug images and results for analysis.

Usage:
    python ocr_diagnostic.py /path/to/capture.mp4
    python ocr_diagnostic.py /path/to/capture.mp4 --frame 100
    python ocr_diagnostic.py /path/to/capture.mp4 --multi 50 --expected 42
"""

import cv2
import numpy as np
import json
import sys
from pathlib import Path
from typing import Optional, Dict, Tuple, List, Iterator
import argparse

import av

from capture_timestamper import (
    BAND_HEIGHT_DIVISOR,
    CaptureTimestampError,
    PipelineConfig,
    Recognized,
    band_height,
    create_recognizer,
    parse_overlay_text,
    prepare_band_for_ocr,
)


def iter_frames(video_path: Path, frame_nums: List[int]) -> Iterator[Tuple[int, np.ndarray]]:
    """Decode the best video stream and yield (frame number, RGB array) for the requested frames"""
    wanted = set(frame_nums)
    last = max(wanted)
    with av.open(str(video_path)) as container:
        stream = container.streams.best('video')
        if stream is None:
            print(f"Error: No video stream in {video_path}")
            return
        for frame_num, frame in enumerate(container.decode(stream)):
            if frame_num in wanted:
                yield frame_num, frame.to_ndarray(format='rgb24')
            if frame_num >= last:
                break


def count_frames(video_path: Path) -> int:
    """Declared frame count of the best video stream, or a full decode count"""
    with av.open(str(video_path)) as container:
        stream = container.streams.best('video')
        if stream is None:
            return 0
        if stream.frames:
            return stream.frames
        return sum(1 for _ in container.decode(stream))


def preprocess_strategies(band_rgb: np.ndarray) -> List[Tuple[str, np.ndarray]]:
    """
    Generate preprocessed versions of the watermark band.

    Output format: BLACK text on WHITE background (standard OCR convention).
    """
    results = [('raw', band_rgb)]

    gray = cv2.cvtColor(band_rgb, cv2.COLOR_RGB2GRAY)
    results.append(('gray', gray))

    is_light_on_dark = np.mean(gray) < 128

    # Pipeline default: Otsu then upscale
    for scale in [1.0, 2.0, 3.0]:
        results.append((f'pipeline_s{scale}', prepare_band_for_ocr(band_rgb, scale)))

    # Fixed thresholds
    for thresh_val in [96, 128, 160]:
        _, thresh = cv2.threshold(gray, thresh_val, 255, cv2.THRESH_BINARY)
        if is_light_on_dark:
            thresh = cv2.bitwise_not(thresh)
        results.append((f'thresh_t{thresh_val}', thresh))

    # Blur before Otsu to suppress compression noise in the band
    for blur_size in [3, 5]:
        blurred = cv2.GaussianBlur(gray, (blur_size, blur_size), 0)
        _, otsu = cv2.threshold(blurred, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        if is_light_on_dark:
            otsu = cv2.bitwise_not(otsu)
        results.append((f'otsu_blur{blur_size}', otsu))

    # Adaptive threshold (uneven band background after lossy transport)
    for block_size in [15, 31]:
        adaptive = cv2.adaptiveThreshold(
            gray, 255,
            cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
            cv2.THRESH_BINARY,
            block_size, -3
        )
        if is_light_on_dark:
            adaptive = cv2.bitwise_not(adaptive)
        results.append((f'adaptive_bs{block_size}', adaptive))

    return results


def run_diagnostic(frame_num: int, rgb: np.ndarray, recognizer, output_dir: Path,
                   band_divisor: int = BAND_HEIGHT_DIVISOR, expected_id: Optional[int] = None) -> Dict:
    """Run full diagnostic on one decoded frame"""

    print(f"\n{'='*70}")
    print(f"OCR DIAGNOSTIC - frame {frame_num}")
    print(f"{'='*70}")
    print(f"Frame size: {rgb.shape[1]}x{rgb.shape[0]}")

    output_dir.mkdir(exist_ok=True, parents=True)

    height = band_height(rgb.shape[0], band_divisor)
    band = np.ascontiguousarray(rgb[:height, :])
    print(f"Band: top {height} rows (1/{band_divisor} of frame height)")

    cv2.imwrite(str(output_dir / f"frame_{frame_num:06d}_original.png"), cv2.cvtColor(rgb, cv2.COLOR_RGB2BGR))
    cv2.imwrite(str(output_dir / f"frame_{frame_num:06d}_band.png"), cv2.cvtColor(band, cv2.COLOR_RGB2BGR))

    preprocessed = preprocess_strategies(band)
    print(f"  Generated {len(preprocessed)} preprocessing variants")

    results = []
    for i, (name, img) in enumerate(preprocessed):
        if img.ndim == 3:
            cv2.imwrite(str(output_dir / f"frame_{frame_num:06d}_pp{i:02d}_{name}.png"),
                        cv2.cvtColor(img, cv2.COLOR_RGB2BGR))
        else:
            cv2.imwrite(str(output_dir / f"frame_{frame_num:06d}_pp{i:02d}_{name}.png"), img)

        raw = recognizer.recognize_text(img).strip()
        recognized = parse_overlay_text(raw)
        valid = isinstance(recognized, Recognized)
        parsed = f"{recognized.id}@{recognized.presentation_time:.3f}s" if valid else None
        results.append({
            'preprocess': name,
            'raw': raw,
            'parsed': parsed,
            'valid': valid,
            'correct': (valid and recognized.id == expected_id) if expected_id is not None else None
        })

    print(f"\n{'Preprocess':<20} {'Raw':<24} {'Parsed':<20} {'Valid'}")
    print("-" * 72)
    for r in results:
        valid_str = "✓" if r['valid'] else "✗"
        if r['correct'] is True:
            valid_str = "✓✓"
        elif r['correct'] is False:
            valid_str = "✗!"
        print(f"{r['preprocess'][:19]:<20} {r['raw'][:23]:<24} {str(r['parsed']):<20} {valid_str}")

    valid_count = sum(1 for r in results if r['valid'])
    print(f"\nValid parses: {valid_count}/{len(results)}")

    json_path = output_dir / f"frame_{frame_num:06d}_results.json"
    with open(json_path, 'w') as f:
        json.dump({
            'frame_num': frame_num,
            'band_height': height,
            'expected_id': expected_id,
            'results': results,
            'summary': {
                'total_attempts': len(results),
                'valid_count': valid_count,
            }
        }, f, indent=2)

    return {'frame_num': frame_num, 'valid_count': valid_count, 'total': len(results)}


def main():
    parser = argparse.ArgumentParser(
        description='OCR Diagnostic Tool for capture watermarks',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('video', help='Path to video file')
    parser.add_argument('--frame', '-f', type=int, default=0, help='Frame number to analyze')
    parser.add_argument('--multi', '-m', type=int, help='Analyze multiple frames (every N frames)')
    parser.add_argument('--expected', '-e', type=int, help='Expected capture id (e.g., 42)')
    parser.add_argument('--output', '-o', default='ocr_diagnostic_output', help='Output directory')
    parser.add_argument('--config', '-c', help='JSON config file')
    parser.add_argument('--ocr-engine', choices=['tesseract', 'easyocr'], help='Text recognition engine')
    parser.add_argument('--tessdata-dir', help='Tesseract language data directory')

    args = parser.parse_args()

    video_path = Path(args.video)
    if not video_path.exists():
        print(f"Error: Video not found: {video_path}")
        return 1

    try:
        config = PipelineConfig.from_json_file(Path(args.config)) if args.config else PipelineConfig()
        if args.ocr_engine:
            config.ocr_engine = args.ocr_engine
        if args.tessdata_dir:
            config.tessdata_dir = args.tessdata_dir
        recognizer = create_recognizer(config)
    except CaptureTimestampError as e:
        print(f"Error: {e}")
        return 1

    if args.multi:
        frame_nums = list(range(0, count_frames(video_path), args.multi))
    else:
        frame_nums = [args.frame]

    if not frame_nums:
        print(f"Error: No frames in {video_path}")
        return 1

    output_dir = Path(args.output)
    summaries = []
    try:
        for frame_num, rgb in iter_frames(video_path, frame_nums):
            summaries.append(run_diagnostic(frame_num, rgb, recognizer, output_dir,
                                            config.band_divisor, args.expected))
    except av.error.FFmpegError as e:
        print(f"Error: Could not decode {video_path}: {e}")
        return 1

    if not summaries:
        print(f"Error: Could not read frame(s) {frame_nums[:5]}")
        return 1

    readable = sum(1 for s in summaries if s['valid_count'] > 0)
    print(f"\nFrames with at least one valid parse: {readable}/{len(summaries)}")
    print(f"Results saved to: {output_dir}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
