from __future__ import annotations


class JobError(ValueError):
    """Base error for job handling.

    ``code`` is a short snake_case identifier stored on failed jobs and
    batches. ``retryable`` tells retry policies whether another attempt can
    succeed.
    """

    retryable = False

    def __init__(self, code: str, detail: str | None = None) -> None:
        self.code = code
        self.detail = detail
        super().__init__(f"{code}: {detail}" if detail else code)


class NotFoundError(JobError):
    pass


class PayloadError(JobError):
    def __init__(self, detail: str) -> None:
        super().__init__("invalid_payload", detail)


class GenerationCanceled(JobError):
    def __init__(self) -> None:
        super().__init__("generation_canceled")


class LLMError(JobError):
    def __init__(
        self,
        code: str,
        detail: str | None = None,
        *,
        retryable: bool = False,
        status: int | None = None,
    ) -> None:
        super().__init__(code, detail)
        self.retryable = retryable
        self.status = status


class LLMResponseError(JobError):
    """The model answered but the text could not be used."""

    def __init__(self, code: str, raw: str, detail: str | None = None) -> None:
        super().__init__(code, detail)
        self.raw = raw
