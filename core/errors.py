from typing import Any, Dict, List, Optional


class CodeBridgeError(Exception):
    """Base exception class for the codebridge project."""
    pass

class ConfigError(CodeBridgeError):
    """Raised when there is an error in a configuration file."""
    pass

class EnvError(CodeBridgeError):
    """Raised when a required environment variable is missing."""
    pass

# --- Bridge errors ---

class ChannelUnavailable(CodeBridgeError):
    """Raised when no transport is connected or the channel dropped mid-request."""
    pass

class Timeout(CodeBridgeError):
    """Raised when no response arrived before the request deadline."""
    pass

class RemoteError(CodeBridgeError):
    """Raised when the peer executed a request but reported a failure."""

    def __init__(self, code: str, message: str = "", details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(f"{code}: {message}" if message else code)

    @property
    def transient(self) -> bool:
        if "transient" in self.details:
            return bool(self.details["transient"])
        # A peer whose own channel timed out or dropped
        return self.code in ("Timeout", "ChannelUnavailable")

class UnsupportedAction(CodeBridgeError):
    """Raised when the peer has no handler for a requested action."""

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"unsupported action '{action}'")

# --- AI request layer errors ---

class ProviderError(CodeBridgeError):
    """Raised by provider clients. ``transient`` decides whether a retry makes sense."""
    transient = True

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")

class TransientProviderError(ProviderError):
    transient = True

class PermanentProviderError(ProviderError):
    transient = False

class AllProvidersExhausted(CodeBridgeError):
    """Raised when every candidate provider failed for one operation."""

    def __init__(self, operation: str, failures: List[Any]):
        self.operation = operation
        self.failures = list(failures)
        tried = ", ".join(f"{f.provider}({f.reason})" for f in self.failures) or "no providers configured"
        super().__init__(f"all providers exhausted for '{operation}': {tried}")

class CacheCorrupt(CodeBridgeError):
    """Raised internally when a cache entry fails validation on read."""
    pass
