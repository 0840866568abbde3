"""
tumulte.errors — Caller-facing exceptions
==========================================

Only data-integrity problems are raised across component boundaries.
Configuration, unknown-type, and remote-dependency failures are returned as
failure values (``TriggerEvaluationResult``, ``ResultData``, ``CheckResult``)
instead.

All classes derive from ``ValueError`` so route handlers can keep the
``except ValueError → HTTPException`` shape and refine it where needed.
"""

from __future__ import annotations


class TumulteError(ValueError):
    """Base class for integrity errors the caller must handle."""


class NotFoundError(TumulteError):
    """A referenced row (instance, config, streamer, campaign) does not exist."""


class InstanceStateError(TumulteError):
    """The requested transition is not allowed from the instance's status."""


class CampaignMismatchError(TumulteError):
    """A row was addressed through a campaign it does not belong to."""


class EventNotEnabledError(TumulteError):
    """The event is not enabled for the campaign."""


class InstanceNotFoundError(NotFoundError):
    """No gamification instance with the given id."""


class ConfigNotFoundError(NotFoundError):
    """No campaign or streamer gamification config for the given keys."""
