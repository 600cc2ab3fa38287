from __future__ import annotations


class PermanentJobError(Exception):
    """Raised by a job handler when retrying cannot succeed; the job is failed immediately."""
