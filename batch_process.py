#!/usr/bin/env python3
"""
Batch Capture Processor
=======================
Discovers video captures in a directory and runs the watermark or recognize
pipeline on each, then writes a summary report.

Usage:
    python batch_process.py recognize ./captures            # Recover timestamps in all captures
    python batch_process.py watermark ./references --id 7   # Watermark all reference clips
    python batch_process.py recognize ./captures --list-only
"""

import sys
import os
import re
import json
import argparse
import logging
from pathlib import Path
from datetime import datetime
from typing import Callable, List, Tuple, Optional, Dict

from capture_timestamper import (
    CaptureTimestampError,
    CancellationSignal,
    Mode,
    PipelineConfig,
    add_config_arguments,
    config_from_args,
    install_signal_handlers,
    run,
    setup_logging,
)


CAPTURE_EXTENSIONS = ('.mp4', '.mkv', '.webm', '.mov', '.ivf')

# Files written by this tool: foo.w.ivf, foo.r.ivf and foo.<id>.ivf
PRODUCED_OUTPUT_PATTERN = re.compile(r'\.(w|r|\d{1,3})\.ivf$')

DEFAULT_MAX_FAILED_RATIO = 0.1


class CaptureDiscovery:
    """Finds capture files under a base directory"""

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path).resolve()
        self.logger = logging.getLogger("CaptureDiscovery")

    def find_all_captures(self) -> List[Path]:
        """
        Recursively find video files to process.
        Outputs previously produced by the pipeline are skipped.
        """
        captures = []

        for root, dirs, files in os.walk(self.base_path):
            root_path = Path(root)
            for name in files:
                if not name.lower().endswith(CAPTURE_EXTENSIONS):
                    continue
                if PRODUCED_OUTPUT_PATTERN.search(name):
                    self.logger.debug(f"Skipping produced output: {root_path / name}")
                    continue
                captures.append(root_path / name)

        # Sort by path for consistent ordering
        captures.sort()
        return captures


class BatchProcessor:
    """Runs the pipeline over many captures and generates summary reports"""

    def __init__(
        self,
        data_dir: Path,
        mode: Mode,
        watermark_id: Optional[str] = None,
        config: Optional[PipelineConfig] = None,
        output_dir: Optional[Path] = None,
        max_failed_ratio: float = DEFAULT_MAX_FAILED_RATIO,
        cancellation: Optional[CancellationSignal] = None,
        runner: Callable = run,
    ):
        self.data_dir = Path(data_dir).resolve()
        self.mode = Mode(mode)
        self.watermark_id = watermark_id
        self.config = config or PipelineConfig()
        self.output_dir = Path(output_dir) if output_dir else self.data_dir / "capture_reports"
        self.max_failed_ratio = max_failed_ratio
        self.cancellation = cancellation or CancellationSignal()
        self.runner = runner

        self.discovery = CaptureDiscovery(self.data_dir)
        self.logger = logging.getLogger("BatchProcessor")

        self.results: List[Dict] = []

    def process_single_capture(self, capture_path: Path) -> Dict:
        """Run the pipeline on one file and return a result record"""
        self.logger.info(f"Processing: {capture_path}")

        try:
            pipeline_result = self.runner(capture_path, self.mode, self.watermark_id, self.cancellation, self.config)
        except CaptureTimestampError as e:
            self.logger.error(f"Error processing {capture_path.name}: {e}")
            print(f"\n  Result: ✗ ERROR - {e}")
            return {
                'capture_name': capture_path.name,
                'capture_path': str(capture_path),
                'status': 'ERROR',
                'error': str(e),
                'overall_pass': False
            }

        result = {
            'capture_name': capture_path.name,
            'capture_path': str(capture_path),
            'status': 'CANCELLED' if pipeline_result.cancelled else 'COMPLETED',
            **pipeline_result.to_dict(),
        }
        result['failed_ratio'] = self._failed_ratio(pipeline_result.frames, pipeline_result.failed_frames)
        result['overall_pass'] = self._check_overall_pass(result)

        status_icon = "✓" if result['overall_pass'] else "✗"
        print(f"\n  Result: {status_icon} {'PASS' if result['overall_pass'] else 'FAIL'} | "
              f"Frames: {result['frames']} | Failed: {result['failed_frames']} | "
              f"Id: {result['recognized_id'] if result['recognized_id'] is not None else 'none'}")
        return result

    @staticmethod
    def _failed_ratio(frames: int, failed_frames: int) -> float:
        return failed_frames / frames if frames else 0.0

    def _check_overall_pass(self, result: Dict) -> bool:
        """Determine if a processed capture is usable for scoring"""
        if result.get('status') != 'COMPLETED' or result.get('rename_error'):
            return False
        if self.mode is Mode.WATERMARK:
            return result.get('frames', 0) > 0
        return (
            result.get('recognized_id') is not None
            and result.get('failed_ratio', 1.0) <= self.max_failed_ratio
        )

    def process_all_captures(self) -> List[Dict]:
        """Discover and process all captures in the data directory"""
        captures = self.discovery.find_all_captures()
        total = len(captures)

        if total == 0:
            print(f"\nNo captures found in {self.data_dir}")
            return []

        print(f"\n{'='*60}")
        print(f"Found {total} captures to process ({self.mode.value})")
        print(f"{'='*60}")

        for i, capture_path in enumerate(captures, 1):
            rel_path = capture_path.relative_to(self.data_dir)

            print(f"\n{'─'*60}")
            print(f"[{i}/{total}] {rel_path}")
            print(f"{'─'*60}")

            self.results.append(self.process_single_capture(capture_path))

            if self.cancellation.stop_requested():
                self.logger.info("Stop requested, skipping remaining captures")
                break

        passed = sum(1 for r in self.results if r.get('overall_pass', False))
        print(f"\n{'='*60}")
        print(f"BATCH COMPLETE: {passed}/{len(self.results)} captures passed")
        print(f"{'='*60}\n")

        return self.results

    def generate_batch_summary(self) -> Tuple[str, str]:
        """Write text and JSON summaries of all processed captures"""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

        total = len(self.results)
        passed = sum(1 for r in self.results if r.get('overall_pass', False))
        errors = sum(1 for r in self.results if r.get('status') == 'ERROR')
        failed = total - passed - errors

        text_lines = [
            "=" * 80,
            "BATCH CAPTURE PROCESSING SUMMARY",
            "=" * 80,
            f"Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Data Directory: {self.data_dir}",
            f"Mode: {self.mode.value}",
            "",
            "-" * 80,
            "SUMMARY",
            "-" * 80,
            f"Total Captures Processed: {total}",
            f"Passed: {passed}",
            f"Failed: {failed}",
            f"Errors: {errors}",
            f"Pass Rate: {(passed/total*100) if total > 0 else 0:.1f}%",
            "",
            "-" * 80,
            "RESULTS BY CAPTURE",
            "-" * 80,
        ]

        for result in self.results:
            status_icon = "✓" if result.get('overall_pass') else "✗"
            text_lines.append(f"{status_icon} {result['capture_name']}: {result['status']}")

            if result.get('error'):
                text_lines.append(f"    Error: {result['error']}")
            else:
                text_lines.append(f"    Output: {result.get('output_path')}")
                text_lines.append(f"    Frames: {result.get('frames')}, Failed: {result.get('failed_frames')} "
                                  f"({result.get('failed_ratio', 0.0)*100:.1f}%)")
                if self.mode is Mode.RECOGNIZE:
                    recognized_id = result.get('recognized_id')
                    text_lines.append(f"    Recognized Id: {recognized_id if recognized_id is not None else 'none'}")
                if result.get('rename_error'):
                    text_lines.append(f"    Rename Error: {result['rename_error']}")

            text_lines.append("")

        text_lines.extend([
            "=" * 80,
            f"OVERALL: {'ALL PASSED' if passed == total and total > 0 else 'ISSUES FOUND'}",
            "=" * 80,
        ])

        text_path = self.output_dir / f"batch_summary_{timestamp}.txt"
        with open(text_path, 'w') as f:
            f.write('\n'.join(text_lines))

        json_path = self.output_dir / f"batch_summary_{timestamp}.json"
        with open(json_path, 'w') as f:
            json.dump({
                'generated_at': datetime.now().isoformat(),
                'data_directory': str(self.data_dir),
                'mode': self.mode.value,
                'config': self.config.to_dict(),
                'summary': {
                    'total': total,
                    'passed': passed,
                    'failed': failed,
                    'errors': errors,
                    'pass_rate': (passed/total*100) if total > 0 else 0
                },
                'results': self.results
            }, f, indent=2, default=str)

        self.logger.info(f"Batch summary saved to: {self.output_dir}")

        return str(text_path), str(json_path)


def main():
    parser = argparse.ArgumentParser(
        description='Batch capture processing - watermark or recognize many files',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Recover timestamps of every capture in ./captures
    python batch_process.py recognize ./captures

    # Watermark every reference clip with id 7
    python batch_process.py watermark ./references --id 7

    # List discovered captures without processing
    python batch_process.py recognize ./captures --list-only
        """
    )

    parser.add_argument('mode', choices=[m.value for m in Mode], help='Pipeline mode')
    parser.add_argument(
        'data_dir',
        nargs='?',
        default='./captures',
        help='Directory containing captures (default: ./captures)'
    )
    parser.add_argument('--id', help='Watermark id (watermark mode only)')
    parser.add_argument(
        '--output', '-o',
        help='Output directory for batch summary (default: <data_dir>/capture_reports)'
    )
    parser.add_argument(
        '--max-failed-ratio',
        type=float,
        default=DEFAULT_MAX_FAILED_RATIO,
        help='Largest share of unrecognized frames for a capture to pass'
    )
    parser.add_argument(
        '--list-only', '-l',
        action='store_true',
        help='List discovered captures without processing'
    )
    add_config_arguments(parser)

    args = parser.parse_args()

    setup_logging(args.verbose)
    logger = logging.getLogger('main')

    data_dir = Path(args.data_dir).resolve()
    if not data_dir.exists():
        logger.error(f"Data directory not found: {data_dir}")
        return 1

    try:
        config = config_from_args(args)
    except CaptureTimestampError as e:
        logger.error(str(e))
        return 1

    cancellation = CancellationSignal()
    install_signal_handlers(cancellation)

    batch = BatchProcessor(
        data_dir,
        Mode(args.mode),
        watermark_id=args.id,
        config=config,
        output_dir=Path(args.output) if args.output else None,
        max_failed_ratio=args.max_failed_ratio,
        cancellation=cancellation,
    )

    if args.list_only:
        captures = batch.discovery.find_all_captures()
        print(f"\nFound {len(captures)} captures in {data_dir}:\n")
        for capture in captures:
            print(f"  {capture.relative_to(data_dir)}")
        return 0

    logger.info(f"Starting batch {args.mode} of: {data_dir}")

    results = batch.process_all_captures()

    if results:
        text_path, json_path = batch.generate_batch_summary()

        passed = sum(1 for r in results if r.get('overall_pass', False))
        total = len(results)

        print("\n" + "=" * 60)
        print(f"BATCH COMPLETE: {passed}/{total} captures passed")
        print(f"Summary report: {text_path}")
        print("=" * 60)

        return 0 if passed == total else 1
    else:
        logger.warning("No captures found or processed")
        return 1


if __name__ == '__main__':
    sys.exit(main())
