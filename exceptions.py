#!/usr/bin/env python3
"""
Error taxonomy for the patient intake pipeline.

Automation errors are retryable by the queue. Screenshot errors are only ever
logged. Enqueue errors surface to the webhook caller.
"""


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class QueueStoreError(PipelineError):
    """The queue store (PostgreSQL) could not be reached or rejected a statement."""


class EnqueueError(QueueStoreError):
    """The queue store could not persist a submission."""


class AutomationError(PipelineError):
    """Base class for failures while driving IsiClinic."""


class NavigationError(AutomationError):
    """A page did not become ready within its timeout."""


class FormNotReadyError(AutomationError):
    """The new-patient form anchor field never became interactive."""


class AuthenticationError(AutomationError):
    """IsiClinic rejected the credentials or the login outcome was not detected."""


class ScreenshotError(PipelineError):
    """A diagnostic screenshot could not be written."""


class InvalidPayloadError(PipelineError):
    """The job payload cannot be processed no matter how often it is retried."""


class JobInterruptedError(PipelineError):
    """The job was left active by a process that stopped mid-attempt."""
