"""
Logging utilities for DocuSight
Provides structured pipeline logging and ingest statistics
"""

import json
import logging
import sys
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class StructuredLogger:
    """Logger that appends a JSON metadata suffix, e.g. a correlation id"""

    def __init__(self, name: str, metadata: Optional[Dict[str, Any]] = None):
        """
        Initialize structured logger

        Args:
            name: Logger name
            metadata: Default metadata to include in all logs
        """
        self.logger = logging.getLogger(name)
        self.metadata = metadata or {}

    def bind(self, **metadata) -> 'StructuredLogger':
        """Return a logger carrying additional default metadata"""
        return StructuredLogger(self.logger.name, {**self.metadata, **metadata})

    def _format_message(self, message: str, **kwargs) -> str:
        data = {**self.metadata, **kwargs}
        if data:
            return f"{message} | {json.dumps(data, default=str, sort_keys=True)}"
        return message

    def debug(self, message: str, **kwargs):
        self.logger.debug(self._format_message(message, **kwargs))

    def info(self, message: str, **kwargs):
        self.logger.info(self._format_message(message, **kwargs))

    def warning(self, message: str, **kwargs):
        self.logger.warning(self._format_message(message, **kwargs))

    def error(self, message: str, **kwargs):
        self.logger.error(self._format_message(message, **kwargs))


class ProcessingStats:
    """Tracks ingest statistics for a CLI run"""

    def __init__(self):
        self.start_time = datetime.now()
        self.total_files = 0
        self.processed_files = 0
        self.ready_files = 0
        self.failed_files = 0
        self.skipped_files = 0
        self.failure_codes: Counter = Counter()
        self.errors = []
        self.processing_times = []
        self.faces = 0
        self.tags = 0

    def set_total(self, total: int):
        self.total_files = total

    def add_result(self, ready: bool, failure_code: Optional[str] = None,
                   processing_time: Optional[float] = None, faces: int = 0, tags: int = 0):
        """
        Add an enrichment result

        Args:
            ready: Whether the asset reached the ready state
            failure_code: Error code when it did not
            processing_time: Time taken to enrich the file
            faces: Faces detected on the asset
            tags: Tags derived for the asset
        """
        self.processed_files += 1
        if ready:
            self.ready_files += 1
        else:
            self.failed_files += 1
            if failure_code:
                self.failure_codes[failure_code] += 1
        if processing_time:
            self.processing_times.append(processing_time)
        self.faces += faces
        self.tags += tags

    def add_skipped(self):
        self.skipped_files += 1

    def add_error(self, file_path: str, error: str):
        self.errors.append({'file': file_path, 'error': error, 'time': datetime.now()})

    def get_elapsed_time(self) -> float:
        return (datetime.now() - self.start_time).total_seconds()

    def get_average_processing_time(self) -> float:
        if not self.processing_times:
            return 0.0
        return sum(self.processing_times) / len(self.processing_times)

    def get_summary(self) -> Dict[str, Any]:
        elapsed = self.get_elapsed_time()
        return {
            'total_files': self.total_files,
            'processed_files': self.processed_files,
            'ready_files': self.ready_files,
            'failed_files': self.failed_files,
            'skipped_files': self.skipped_files,
            'success_rate': (self.ready_files / self.processed_files * 100)
                            if self.processed_files > 0 else 0,
            'failure_codes': dict(self.failure_codes),
            'faces': self.faces,
            'tags': self.tags,
            'errors': len(self.errors),
            'elapsed_time': elapsed,
            'average_time_per_file': self.get_average_processing_time(),
            'files_per_second': self.processed_files / elapsed if elapsed > 0 else 0,
        }

    def print_summary(self):
        """Print ingest summary to console"""
        summary = self.get_summary()

        print("\n" + "=" * 60)
        print("INGEST SUMMARY")
        print("=" * 60)
        print(f"Total files:      {summary['total_files']}")
        print(f"Processed:        {summary['processed_files']}")
        print(f"Ready:            {summary['ready_files']} ({summary['success_rate']:.1f}%)")
        print(f"Failed:           {summary['failed_files']}")
        if summary['skipped_files']:
            print(f"Skipped:          {summary['skipped_files']} (already ingested)")

        if summary['failure_codes']:
            print("\nFailure codes:")
            for code, count in sorted(summary['failure_codes'].items()):
                print(f"  - {code}: {count}")

        print(f"\nFaces detected:   {summary['faces']}")
        print(f"Tags derived:     {summary['tags']}")
        print(f"Elapsed time:     {summary['elapsed_time']:.1f}s")
        print(f"Avg time/file:    {summary['average_time_per_file']:.2f}s")
        print("=" * 60)

        if self.errors:
            print("\nERRORS:")
            for error in self.errors[:10]:
                print(f"  - {error['file']}: {error['error']}")
            if len(self.errors) > 10:
                print(f"  ... and {len(self.errors) - 10} more errors")


def setup_console_logging(level: str = "INFO", color: bool = True,
                          log_file: Optional[str] = None):
    """
    Setup console logging with optional color support

    Args:
        level: Logging level name
        color: Whether to use colored output
        log_file: Optional file that also receives every record
    """
    console_handler = logging.StreamHandler(sys.stderr)

    if color and sys.stderr.isatty():
        try:
            import colorlog
            formatter = colorlog.ColoredFormatter(
                '%(log_color)s%(asctime)s - %(name)s - %(levelname)s%(reset)s - %(message)s',
                log_colors={
                    'DEBUG': 'cyan',
                    'INFO': 'green',
                    'WARNING': 'yellow',
                    'ERROR': 'red',
                    'CRITICAL': 'red,bg_white',
                }
            )
        except ImportError:
            formatter = logging.Formatter(LOG_FORMAT)
    else:
        formatter = logging.Formatter(LOG_FORMAT)

    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    # Replace handlers from an earlier call instead of stacking them
    for handler in [h for h in root_logger.handlers if getattr(h, "_docusight", False)]:
        root_logger.removeHandler(handler)
        handler.close()
    console_handler._docusight = True
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler._docusight = True
        root_logger.addHandler(file_handler)
