"""threadloom: branching chat history, streamed replies, versioned artifacts."""

__version__ = "0.1.0"
