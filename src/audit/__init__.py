"""
Power BI Measure Tools Change Log
Records batch runs and model mutations
"""

from .change_logger import (
    ChangeLogger,
    ChangeEventType,
    ChangeSeverity,
    get_change_logger,
    configure_change_logger
)

__all__ = [
    'ChangeLogger',
    'ChangeEventType',
    'ChangeSeverity',
    'get_change_logger',
    'configure_change_logger',
]
