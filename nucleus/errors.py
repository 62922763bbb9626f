"""Exception hierarchy for the feed engine"""


class NucleusError(Exception):
    """Base error for all engine failures"""


class InvalidUriError(NucleusError, ValueError):
    """A record identifier could not be parsed"""

    def __init__(self, uri: str):
        super().__init__(f"invalid record uri: {uri!r}")
        self.uri = uri


class UnwrapError(NucleusError):
    """unwrap() was called on an Err value"""


class CacheStoreError(NucleusError):
    """Persisting or restoring cache entries failed"""
