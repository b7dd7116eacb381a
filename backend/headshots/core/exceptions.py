"""
Processing error taxonomy
"""
from typing import Optional


class ProcessingError(Exception):
    """Base error for a job that could not be processed"""


class InputError(ProcessingError):
    """The job's input cannot be processed as configured; retrying will not help"""


class StepFailedError(ProcessingError):
    """A pipeline step failed for one output variant"""

    def __init__(self, step: str, message: str, variant: Optional[str] = None):
        self.step = step
        self.variant = variant
        self.message = message
        where = f"{step} ({variant})" if variant else step
        super().__init__(f"{where} failed: {message}")
