from cloudrun_export_kit.version import __version__

__all__ = ["__version__"]
