try:
    from importlib.metadata import version as _version

    __version__ = _version("meterledger")
except Exception:
    __version__ = "unknown"

__all__ = ["__version__"]
