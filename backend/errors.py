"""
Typed failures raised by the chat and scan pipelines.
Each one is translated to an HTTP response in app.py.
"""
from typing import Optional

from models import GuardVerdict


class UpstreamError(Exception):
    """An LLM backend failed: transport error, timeout or non-2xx response."""

    def __init__(self, http_status: int, provider_message: str):
        super().__init__(f"Upstream error ({http_status}): {provider_message}")
        self.http_status = http_status
        self.provider_message = provider_message


class GuardBlocked(Exception):
    """AI Guard rejected the prompt (stage='input') or the model reply (stage='output')."""

    def __init__(self, stage: str, verdict: GuardVerdict, input_verdict: Optional[GuardVerdict] = None):
        super().__init__(verdict.message or f"AI Guard blocked the {stage}")
        self.stage = stage
        self.verdict = verdict
        # Set on output blocks so callers still see the input verdict
        self.input_verdict = input_verdict


class AttachmentRejected(ValueError):
    """An attachment exceeds the size cap or carries undecodable data."""


class ExtractionFailure(Exception):
    """Text could not be extracted from one attachment."""

    def __init__(self, filename: str, reason: str):
        super().__init__(f"Could not extract text from {filename}: {reason}")
        self.filename = filename
        self.reason = reason


class ScanRequestError(ValueError):
    """The scan target descriptor is unusable (missing file, missing LLM settings)."""


class ScanSubprocessFailure(Exception):
    """The scanner exited non-zero without output, timed out or could not start."""

    def __init__(self, detail: str, returncode: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.returncode = returncode


class PersistenceFailure(Exception):
    """The scan history file could not be written."""
