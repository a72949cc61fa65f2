from __future__ import annotations


class TaskcodaError(Exception):
    """Base error for TaskCoda."""


class AuthenticationError(TaskcodaError):
    """Missing or invalid caller identity."""


class PermissionDeniedError(TaskcodaError):
    """Authenticated caller lacks the role required for the operation."""


class NotFoundError(TaskcodaError):
    """Requested record does not exist (or is soft-deleted)."""


class OrganizationNotFoundError(NotFoundError):
    """Organization missing or soft-deleted."""


class SubscriptionNotFoundError(NotFoundError):
    """No subscription mirrors the requested billing record."""


class MembershipNotFoundError(NotFoundError):
    """Team membership missing."""


class UserNotFoundError(NotFoundError):
    """User missing."""


class FeatureFlagNotFoundError(NotFoundError):
    """Feature flag missing."""


class ConflictError(TaskcodaError):
    """Unique attribute already taken or state transition already applied."""


class ValidationFailedError(TaskcodaError):
    """Input rejected by a business rule."""


class WebhookVerificationError(TaskcodaError):
    """Inbound webhook signature could not be verified."""


class BillingConfigError(TaskcodaError):
    """Missing or invalid billing provider configuration."""


class BillingProviderError(TaskcodaError):
    """Billing provider request failure."""


class LLMConfigError(TaskcodaError):
    """Missing or invalid LLM provider configuration."""


class LLMProviderError(TaskcodaError):
    """LLM provider request failure."""


class EmailDeliveryError(TaskcodaError):
    """Email provider request failure."""
