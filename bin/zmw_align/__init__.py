"""zmw-align: align PacBio subreads to the CCS read of their ZMW."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("zmw-align")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"
