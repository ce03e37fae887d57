"""Exception types raised by the pipeline."""


class MangroveMapperError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(MangroveMapperError, ValueError):
    """Fatal misconfiguration: empty training class, mismatched bands or grids, bad parameters."""


class DataGapError(MangroveMapperError):
    """
    The requested time window yields no usable observation after cloud masking.

    Seasonal cloud cover makes this an expected condition; the pipeline reports it
    as a "no data" result instead of crashing.
    """

    def __init__(self, message: str, start=None, end=None, region=None):
        super().__init__(message)
        self.start = start
        self.end = end
        self.region = region
