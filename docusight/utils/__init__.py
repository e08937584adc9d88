"""
DocuSight utilities module.
"""

from .logging import StructuredLogger, ProcessingStats, setup_console_logging

__all__ = ['StructuredLogger', 'ProcessingStats', 'setup_console_logging']
