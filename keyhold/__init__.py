"""keyhold - local secrets daemon and registry client."""

__version__ = "0.1.0"
