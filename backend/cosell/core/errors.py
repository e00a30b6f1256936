"""Error taxonomy for the detection pipeline.

None of these are fatal to a scan: the detector catches each at the
granularity it applies to (record, source, communication, CRM pair) and
reports what was skipped in the ScanOutcome.
"""
from typing import Optional


class CoSellError(Exception):
    """Base class for pipeline errors."""


class MalformedInput(CoSellError):
    """A raw communication is missing required fields (id, timestamp)."""


class FetchFailure(CoSellError):
    """A communication source could not be fetched."""

    def __init__(self, source: str, message: str):
        super().__init__(f"{source}: {message}")
        self.source = source


class ExtractionFailure(CoSellError):
    """The extractor could not produce a result for one communication."""


class CrmQueryFailure(CoSellError):
    """An MSX or Fabric lookup failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
