class ClassifierError(Exception):
    """Raised when the LLM classifier is unavailable or its call fails."""

    def __init__(self, kind: str, detail: str) -> None:
        super().__init__(f"{kind}: {detail}")
        self.kind = kind
        self.detail = detail


class CacheError(Exception):
    """Raised by cache backends when a read or write cannot be completed."""


class ConfigurationError(Exception):
    """Raised when a configuration artifact (e.g. a rules file) is unusable."""
