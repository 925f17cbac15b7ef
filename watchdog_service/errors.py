class WatchdogError(Exception):
    """Base class for watchdog errors"""


class ValidationError(WatchdogError, ValueError):
    """Malformed health check registration"""


class ProbeTransportError(WatchdogError):
    """Network, timeout or endpoint resolution failure during a probe"""


class StaleKeyError(WatchdogError):
    """A scheduled key is no longer registered"""

    def __init__(self, key: str):
        super().__init__(f"Health check {key} is no longer registered")
        self.key = key


class StorageError(WatchdogError):
    """Persistence layer unavailable"""
