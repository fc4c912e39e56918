class NotifyError(Exception):
    """Base error for notifyq."""


class PayloadError(NotifyError, ValueError):
    """Notification payload does not match the fields its kind requires."""


class ConfigError(NotifyError, ValueError):
    """Unknown configuration key or invalid value."""
