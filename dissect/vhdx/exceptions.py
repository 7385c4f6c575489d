class Error(Exception):
    pass


class ReadError(Error, OSError):
    pass


class InvalidSignature(Error):
    pass


class CorruptHeaderError(Error):
    pass


class InvalidVirtualDisk(Error):
    pass


class UnsupportedRequiredRegion(InvalidVirtualDisk):
    pass


class UnsupportedRequiredMetadata(InvalidVirtualDisk):
    pass


class RegionOutOfBounds(InvalidVirtualDisk):
    pass


class ParentError(Error):
    pass


class ParentNotFound(ParentError):
    pass


class ParentCycleDetected(ParentError):
    pass
