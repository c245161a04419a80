"""
Exceptions raised while converting uploads to WebM.
"""
from typing import Optional


class ConversionError(Exception):
    """Base exception for conversion related errors"""
    def __init__(self, message: str, job_id: Optional[str] = None, output: Optional[str] = None):
        self.message = message
        self.job_id = job_id
        self.output = output
        super().__init__(self.message)


class StrategyFailed(ConversionError):
    """A single strategy could not convert the file; the next one is tried."""


class FatalIOFailure(ConversionError):
    """The input could not be staged or no output could be written at all."""


class ConversionFailed(ConversionError):
    """Every strategy failed. Raised to the caller of the orchestrator."""


class BroadcastFailure(ConversionError):
    """A progress event could not be delivered to a subscriber."""
