"""Error taxonomy for the publish and consume paths.

- ValidationError: structural problem found before publish, never retried.
- SerializationError: the event could not be encoded/decoded; treated like a
  validation failure.
- PublishError: the log refused or failed the send.
- ProcessingError: persistence failed on the consume side.
"""
from __future__ import annotations


class PipelineError(Exception):
    pass


class ValidationError(PipelineError, ValueError):
    pass


class SerializationError(ValidationError):
    pass


class PublishError(PipelineError):
    pass


class ProcessingError(PipelineError):
    def __init__(self, message: str, *, message_id: str | None = None) -> None:
        super().__init__(message)
        self.message_id = message_id
