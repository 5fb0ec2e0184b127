"""directchat: direct device-to-device text chat over a local link."""

__version__ = "0.1.0"
