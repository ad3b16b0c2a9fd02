"""Exception hierarchy raised at component seams."""

from __future__ import annotations


class OpsAgentError(Exception):
    """Base class for all ops-agent errors."""


class ProviderRegistrationError(OpsAgentError):
    """Transport creation, handshake or catalog fetch failed."""


class ProviderAlreadyRegisteredError(ProviderRegistrationError, ValueError):
    """A provider with the same name is already registered."""


class ProviderNotFoundError(OpsAgentError, KeyError):
    """No live connection exists for the provider name."""


class ToolNotFoundError(OpsAgentError, KeyError):
    """The tool is unknown to the gateway."""


class ToolCallError(OpsAgentError):
    """A tool invocation failed or timed out."""


class RetrievalError(OpsAgentError):
    """Every knowledge retrieval path failed."""


class StoreError(OpsAgentError):
    """The durable store could not complete an operation."""
