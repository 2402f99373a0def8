"""Exception hierarchy shared by Proxlock components."""


class ProxlockError(Exception):
    """Base exception for Proxlock errors."""
    pass
