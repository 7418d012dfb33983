"""keg — manifest-driven artifact installer."""

__version__ = "0.1.0"
