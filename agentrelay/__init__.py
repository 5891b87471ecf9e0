"""agent-relay: drive coding-agent backends over a single streaming event protocol."""

__version__ = "0.1.0"
