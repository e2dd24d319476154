"""Exception hierarchy for btca.

One exception per failure mode. Cancellation is not an error: a
canceled question is reported through its status instead.
"""
from __future__ import annotations


class BtcaError(Exception):
    """Base exception for all btca errors."""

    # Short identifier surfaced to HTTP clients as ``tag``.
    tag = "BtcaError"


class ValidationError(BtcaError):
    """A user-supplied value was rejected before use."""
    tag = "ValidationError"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(reason)


class ConfigError(ValidationError):
    """A configuration file is malformed or holds an invalid entry."""
    tag = "ConfigError"

    def __init__(self, source: str, reason: str):
        self.source = source
        super().__init__(source, f"Invalid config {source}: {reason}")


class ResourceError(BtcaError):
    """Cloning, fetching or reading a resource failed.

    Retryable by calling ``ensure`` again.
    """
    tag = "ResourceError"

    def __init__(self, name: str, operation: str, reason: str):
        self.name = name
        self.operation = operation
        self.reason = reason
        super().__init__(
            f"Resource '{name}' {operation} failed: {reason}"
        )


class ResourceNotConfiguredError(BtcaError):
    """A requested resource name has no definition."""
    tag = "ResourceNotConfiguredError"

    def __init__(self, name: str, available: list[str]):
        self.name = name
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f'Resource "{name}" not found in config. '
            f"Available resources: {avail_str}"
        )


class ResourceNotFoundError(BtcaError):
    """A local resource points at a directory that does not exist."""
    tag = "ResourceNotFoundError"

    def __init__(self, name: str, path: str):
        self.name = name
        self.path = path
        super().__init__(
            f"Local resource '{name}' directory not found: {path}"
        )


class CollectionError(BtcaError):
    """Assembling a collection failed."""
    tag = "CollectionError"


class AgentError(BtcaError):
    """The external agent process or its session failed."""
    tag = "AgentError"

    def __init__(self, message: str, error_name: str | None = None):
        self.error_name = error_name
        super().__init__(message)


class AgentStartError(AgentError):
    """The agent process could not be started."""
    tag = "AgentStartError"


class InvalidProviderError(AgentError):
    """The configured provider is unknown to the agent."""
    tag = "InvalidProviderError"

    def __init__(self, provider_id: str, available: list[str]):
        self.provider_id = provider_id
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Provider '{provider_id}' is not available. "
            f"Available providers: {avail_str}",
            error_name=self.tag,
        )


class ProviderNotConnectedError(AgentError):
    """The configured provider exists but has no credentials."""
    tag = "ProviderNotConnectedError"

    def __init__(self, provider_id: str, connected: list[str]):
        self.provider_id = provider_id
        self.connected = connected
        conn_str = ", ".join(connected) if connected else "none"
        super().__init__(
            f"Provider '{provider_id}' is not connected. "
            f"Connected providers: {conn_str}",
            error_name=self.tag,
        )


class InvalidModelError(AgentError):
    """The configured model is not offered by the provider."""
    tag = "InvalidModelError"

    def __init__(self, provider_id: str, model_id: str, available: list[str]):
        self.provider_id = provider_id
        self.model_id = model_id
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Model '{model_id}' is not available for provider "
            f"'{provider_id}'. Available models: {avail_str}",
            error_name=self.tag,
        )


class ThreadStoreError(BtcaError):
    """Persisting conversation state failed."""
    tag = "ThreadStoreError"


class ThreadNotFoundError(ThreadStoreError):
    """A thread id does not exist."""
    tag = "ThreadNotFoundError"

    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        super().__init__(f"Thread not found: {thread_id}")


class QuestionNotFoundError(ThreadStoreError):
    """A question id does not exist."""
    tag = "QuestionNotFoundError"

    def __init__(self, question_id: str):
        self.question_id = question_id
        super().__init__(f"Question not found: {question_id}")


class RemoteError(BtcaError):
    """A btca server answered a request with an error."""
    tag = "RemoteError"

    def __init__(self, status: int, message: str, tag: str | None = None):
        self.status = status
        self.remote_tag = tag
        super().__init__(f"btca server error ({status}{', ' + tag if tag else ''}): {message}")
